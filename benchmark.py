from sqlalchemy import create_engine
from sqlalchemy_relations import (
    EntityRegistry, EntityType, Field, FieldType, Resolver,
    belongs_to, belongs_to_many, has_many,
)
from sqlalchemy_relations.base.executor import Executor
from sqlalchemy_relations.memory.executor import MemoryExecutor
from sqlalchemy_relations.memory.store import MemoryStore
from sqlalchemy_relations.sql.executor import SqlAlchemyExecutor
from sqlalchemy_relations.sql.schema import build_metadata
import argparse
import time
import random
from faker import Faker


random.seed(42)
fake = Faker()
GENRES = ["fantasy", "crime", "poetry", "history", "science", "travel", "horror", "romance"]


def build_registry():
    registry = EntityRegistry()
    registry.register_all([
        EntityType("Author", [Field("name"), Field("country")], table="authors", relations=[
            has_many("books", "Book", foreign_key="author_id"),
        ]),
        EntityType("Book", [
            Field("author_id", FieldType.INTEGER, index=True),
            Field("title"),
            Field("price", FieldType.FLOAT, index=True),
        ], table="books", relations=[
            belongs_to("author", "Author"),
            has_many("reviews", "Review", foreign_key="book_id"),
            belongs_to_many("genres", "Genre", table="book_genre", foreign_pivot_key="book_id",
                            related_pivot_key="genre_id"),
        ]),
        EntityType("Review", [
            Field("book_id", FieldType.INTEGER, index=True),
            Field("rating", FieldType.INTEGER, index=True),
            Field("body"),
        ], table="reviews"),
        EntityType("Genre", [Field("name")], table="genres"),
    ])
    return registry


class CountingExecutor(Executor):
    def __init__(self, executor):
        self.executor = executor
        self.queries = 0

    def execute(self, spec):
        self.queries += 1
        return self.executor.execute(spec)


def generate_rows(count):
    authors = [{"id": i, "name": fake.name(), "country": fake.country()} for i in range(1, count + 1)]
    genres = [{"id": i, "name": name} for i, name in enumerate(GENRES, start=1)]

    books, reviews, links = [], [], []
    for author in authors:
        for _ in range(random.randint(0, 5)):
            book_id = len(books) + 1
            books.append({
                "id": book_id,
                "author_id": author["id"],
                "title": fake.sentence(nb_words=4),
                "price": round(random.uniform(5, 60), 2),
            })
            for genre_id in random.sample(range(1, len(GENRES) + 1), random.randint(1, 3)):
                links.append({"book_id": book_id, "genre_id": genre_id})
            for _ in range(random.randint(0, 4)):
                reviews.append({
                    "id": len(reviews) + 1,
                    "book_id": book_id,
                    "rating": random.randint(1, 5),
                    "body": fake.text(max_nb_chars=80),
                })

    return {"Author": authors, "Genre": genres, "Book": books, "Review": reviews}, links


def setup(db_type, registry, count):
    rows, links = generate_rows(count)

    insert_start = time.time()
    if db_type == "sqlite":
        engine = create_engine("sqlite:///:memory:", echo=False)
        metadata = build_metadata(registry)
        metadata.create_all(engine)
        with engine.begin() as conn:
            for name, entity_rows in rows.items():
                if entity_rows:
                    conn.execute(metadata.tables[registry.lookup(name).table].insert(), entity_rows)
            if links:
                conn.execute(metadata.tables["book_genre"].insert(), links)
        executor = SqlAlchemyExecutor(engine, metadata)

    elif db_type == "memory":
        store = MemoryStore(registry)
        for name, entity_rows in rows.items():
            store.insert_many(name, entity_rows)
        book = registry.lookup("Book")
        for link in links:
            store.attach(book.new_record(store.get_by_primary_key(book, link["book_id"])), "genres", link["genre_id"])
        executor = MemoryExecutor(store)

    else:
        raise ValueError("Invalid --type. Use 'sqlite' or 'memory'.")

    insert_duration = time.time() - insert_start
    print(f"Inserted {sum(len(r) for r in rows.values()) + len(links)} rows in {insert_duration:.2f} seconds.")
    return CountingExecutor(executor), insert_duration


def eager(resolver, executor, rounds):
    executor.queries = 0
    start = time.time()
    for _ in range(rounds):
        authors = resolver.get(
            resolver.query("Author").with_("books.reviews", "books.genres").with_count("books")
        )
    duration = time.time() - start
    print(f"Eager loaded {len(authors)} authors {rounds} times with {executor.queries} queries in {duration:.2f} seconds.")
    return duration


def lazy(resolver, executor, rounds):
    executor.queries = 0
    start = time.time()
    for _ in range(rounds):
        authors = resolver.get(resolver.query("Author"))
        for author in authors:
            for book in resolver.relation(author, "books"):
                resolver.relation(book, "reviews")
                resolver.relation(book, "genres")
    duration = time.time() - start
    print(f"Lazy loaded {len(authors)} authors {rounds} times with {executor.queries} queries in {duration:.2f} seconds.")
    return duration


def pushdowns(resolver, executor, count):
    executor.queries = 0
    start = time.time()
    for _ in range(count):
        rating = random.randint(1, 5)
        query = resolver.query("Book").where_has("reviews", [("rating", ">=", rating)])
        if random.random() < 0.5:
            resolver.count(query)
        else:
            resolver.exists(query.where("price", "<", round(random.uniform(5, 60), 2)))
    duration = time.time() - start
    print(f"Executed {executor.queries} existence queries in {duration:.2f} seconds.")
    return duration


def run_benchmark(db_type="sqlite", count=1_000, rounds=5):
    print(f"Running benchmark: type={db_type}, count={count}")

    registry = build_registry()
    executor, elapsed = setup(db_type, registry, count)
    resolver = Resolver(registry, executor)

    elapsed += eager(resolver, executor, rounds)
    elapsed += lazy(resolver, executor, rounds)
    elapsed += pushdowns(resolver, executor, 200)

    print(f"Total runtime for {db_type}: {elapsed:.2f} seconds.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--type", choices=["sqlite", "memory"], required=True)
    parser.add_argument("--count", type=int, default=1_000)
    parser.add_argument("--rounds", type=int, default=5)
    args = parser.parse_args()
    run_benchmark(args.type, args.count, args.rounds)
