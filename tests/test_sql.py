from datetime import datetime

import pytest
from sqlalchemy import MetaData, create_engine
from sqlalchemy.dialects import postgresql, mysql

from sqlalchemy_relations import ExecutionError, LockMode, QueryBuilder, Resolver
from sqlalchemy_relations.events import StatementCounter
from sqlalchemy_relations.sql.compiler import QueryCompiler
from sqlalchemy_relations.sql.executor import SqlAlchemyExecutor
from sqlalchemy_relations.sql.schema import build_metadata


def by_key(records):
    return {record.key: record for record in records}


def sorted_keys(records):
    return sorted(record.key for record in records)


class TestSchema:
    def test_tables(self, metadata):
        assert set(metadata.tables) == {
            "affiliations", "users", "posts", "comments", "tags", "series", "lessons", "videos",
            "likes", "post_tag",
        }

        posts = metadata.tables["posts"]
        assert posts.c.id.primary_key
        assert posts.c.user_id.index
        assert not posts.c.title.nullable

        assert set(metadata.tables["likes"].c.keys()) == {"post_id", "user_id", "created_at", "updated_at"}
        assert set(metadata.tables["post_tag"].c.keys()) == {"post_id", "tag_id", "weight"}

    def test_existing_tables_are_kept(self, registry):
        metadata = build_metadata(registry)

        assert build_metadata(registry, metadata) is metadata
        assert len(metadata.tables) == 10


class TestStatements:
    def test_batch_scenario(self, sql_resolver, engine):
        with StatementCounter(engine) as statements:
            users = sql_resolver.get(sql_resolver.query("User").where_in("id", [1, 2, 3]).with_("posts"))

        assert len(statements) == 2
        assert len(statements.matching(r"FROM posts\s+WHERE posts\.user_id IN \(\?, \?, \?\)")) == 1

        users = by_key(users)
        assert sorted_keys(users[1].relation("posts")) == [1, 2]
        assert sorted_keys(users[2].relation("posts")) == [3]
        assert sorted_keys(users[3].relation("posts")) == [4]

    @pytest.mark.parametrize("count", [0, 1, 1000])
    def test_statement_count_independent_of_rows(self, registry, metadata, count):
        engine = create_engine("sqlite://")
        metadata.create_all(engine)
        with engine.begin() as conn:
            if count:
                conn.execute(metadata.tables["users"].insert(), [{"id": i, "name": f"user{i}"} for i in range(1, count + 1)])
                conn.execute(metadata.tables["posts"].insert(), [
                    {"user_id": i, "title": f"post{i}", "votes": i} for i in range(1, count + 1)
                ])

        resolver = Resolver(registry, SqlAlchemyExecutor(engine, metadata))
        with StatementCounter(engine) as statements:
            users = resolver.get(resolver.query("User").with_("posts.comments", "posts.tags").with_count("comments"))

        assert len(users) == count
        assert len(statements) == 4
        assert all(len(user.relation("posts")) == 1 for user in users)
        engine.dispose()

    def test_count_is_a_subquery(self, sql_resolver, engine):
        with StatementCounter(engine) as statements:
            users = by_key(sql_resolver.get(sql_resolver.query("User").with_count("posts")))

        assert len(statements) == 1
        assert statements.matching(r"\(SELECT count\(\*\)(?: AS \w+)?\s+FROM posts AS \w+\s+WHERE \w+\.user_id = users\.id\) AS posts_count")
        assert {k: u["posts_count"] for k, u in users.items()} == {1: 2, 2: 1, 3: 1, 4: 0}
        assert not users[1].is_loaded("posts")

    def test_exists_is_correlated(self, sql_resolver, engine):
        with StatementCounter(engine) as statements:
            users = sql_resolver.get(sql_resolver.query("User").where_doesnt_have("posts"))

        assert len(statements) == 1
        assert statements.matching(r"NOT \(EXISTS \(SELECT")
        assert [u.key for u in users] == [4]

    def test_through_relation(self, sql_resolver, engine):
        with StatementCounter(engine) as statements:
            affiliations = by_key(sql_resolver.get(sql_resolver.query("Affiliation").with_("posts")))

        assert len(statements) == 3
        assert sorted_keys(affiliations[1].relation("posts")) == [1, 2, 3]
        assert sorted_keys(affiliations[2].relation("posts")) == [4]
        assert affiliations[3].relation("posts") == []

    def test_pivot_join(self, sql_resolver, engine):
        with StatementCounter(engine) as statements:
            posts = by_key(sql_resolver.get(sql_resolver.query("Post").with_("tags", "likes")))

        assert len(statements) == 3
        assert statements.matching(r"post_tag\.weight AS pivot__weight")

        tags = sorted(posts[1].relation("tags"), key=lambda t: t.key)
        assert [(t["name"], t.pivot["weight"]) for t in tags] == [("python", 1), ("sql", 2)]
        assert "weight" not in tags[0].fields
        assert sorted_keys(posts[1].relation("likes")) == [2, 3]
        assert posts[2].relation("tags") == []


class TestResults:
    def test_filters(self, sql_resolver):
        query = (
            sql_resolver.query("Post")
            .where("votes", ">", 0)
            .where_not_null("content")
            .where_date("created_at", "2024-01-02")
        )

        assert [p.key for p in sql_resolver.get(query)] == [2]

    def test_nested_and_constrained(self, sql_resolver):
        post = sql_resolver.find("Post", 1, with_=["comments.author:name", "approved_comments"])

        comments = sorted(post.relation("comments"), key=lambda c: c.key)
        assert [c.relation("author")["name"] for c in comments] == ["bob", "carol"]
        assert [c.key for c in post.relation("approved_comments")] == [1]
        assert post.relation("approved_comments")[0]["approved"] is True

    def test_morph_many(self, sql_resolver):
        series = by_key(sql_resolver.get(sql_resolver.query("Series").with_("videos").with_count("videos")))

        assert sorted_keys(series[1].relation("videos")) == [1, 2]
        assert series[1]["videos_count"] == 2
        assert series[2].relation("videos") == []

    def test_aggregates(self, sql_resolver):
        users = by_key(sql_resolver.get(
            sql_resolver.query("User").with_sum("posts", "votes").with_max("posts", "votes", alias="best")
        ))

        assert (users[1]["posts_sum"], users[1]["best"]) == (15, 10)
        assert users[4]["posts_sum"] is None

    def test_nested_pushdown(self, sql_resolver, engine):
        with StatementCounter(engine) as statements:
            users = by_key(sql_resolver.get(sql_resolver.query("User").with_count("posts.likes")))

        assert len(statements) == 1
        assert {k: u["likes_count"] for k, u in users.items()} == {1: 2, 2: 1, 3: 0, 4: 0}
        assert not users[1].is_loaded("posts")

    @pytest.mark.parametrize("build,expected", [
        (lambda q: q.where_has("posts.comments"), [1, 2]),
        (lambda q: q.where_doesnt_have("posts.comments"), [3, 4]),
        (lambda q: q.where_has("posts.tags", filters=[("weight", ">=", 2)]), [1, 2]),
        (lambda q: q.where_has("posts.approved_comments.author", filters=[("name", "bob")]), [1]),
    ])
    def test_nested_existence(self, sql_resolver, engine, build, expected):
        with StatementCounter(engine) as statements:
            users = sql_resolver.get(build(sql_resolver.query("User")))

        assert len(statements) == 1
        assert sorted_keys(users) == expected

    def test_nested_existence_count(self, sql_resolver):
        assert sql_resolver.count(sql_resolver.query("User").where_has("posts.comments")) == 2
        assert [a.key for a in sql_resolver.get(sql_resolver.query("Affiliation").where_has("posts.comments"))] == [1]

    def test_count_and_exists(self, sql_resolver, engine):
        with StatementCounter(engine) as statements:
            assert sql_resolver.count(sql_resolver.query("Post").where_has("tags")) == 2
            assert sql_resolver.count(sql_resolver.query("Post").take(1)) == 4
            assert sql_resolver.exists(sql_resolver.query("User").where_has("comments"))
            assert not sql_resolver.exists(sql_resolver.query("User").where("name", "eve"))

        assert len(statements) == 4

    def test_datetime_round_trip(self, sql_resolver):
        post = sql_resolver.find("Post", 4)

        assert post["created_at"] == datetime(2024, 1, 3, 8, 0)


class TestLocking:
    def test_lock_stays_on_root_query(self, sql_resolver, sql_executor):
        sql_resolver.get(sql_resolver.query("User").lock_for_update().with_("posts"))

        assert [spec.lock for spec in sql_executor.specs] == [LockMode.FOR_UPDATE, LockMode.NONE]

    @pytest.mark.parametrize("dialect,lock,expected", [
        (postgresql.dialect(), LockMode.FOR_UPDATE, "FOR UPDATE"),
        (postgresql.dialect(), LockMode.SHARED, "FOR SHARE"),
        (mysql.dialect(), LockMode.SHARED, "LOCK IN SHARE MODE"),
    ])
    def test_lock_rendering(self, registry, metadata, dialect, lock, expected):
        spec = QueryBuilder(registry, "User").build().replace(lock=lock)

        sql = str(QueryCompiler(metadata).compile(spec).compile(dialect=dialect))

        assert sql.endswith(expected)

    def test_no_lock_rendered_by_default(self, registry, metadata):
        spec = QueryBuilder(registry, "User").with_("posts").build()

        sql = str(QueryCompiler(metadata).compile(spec.replace(directives=())).compile(dialect=postgresql.dialect()))

        assert "FOR UPDATE" not in sql

    def test_connection_bind(self, registry, metadata, engine):
        with engine.begin() as conn:
            resolver = Resolver(registry, SqlAlchemyExecutor(conn, metadata))
            users = resolver.get(resolver.query("User").where("id", 1).lock_for_update().with_("posts"))

        assert sorted_keys(users[0].relation("posts")) == [1, 2]


class TestErrors:
    def test_driver_error_is_wrapped(self, sql_resolver, metadata, engine):
        users = sql_resolver.get(sql_resolver.query("User"))
        metadata.tables["comments"].drop(engine)

        with pytest.raises(ExecutionError) as exc_info:
            sql_resolver.load(users, "posts", "posts.comments")

        assert "comments" in exc_info.value.detail
        assert exc_info.value.__cause__ is not None
        assert not any(user.is_loaded("posts") for user in users)

    def test_missing_table(self, registry, engine):
        resolver = Resolver(registry, SqlAlchemyExecutor(engine, MetaData()))

        with pytest.raises(ExecutionError):
            resolver.get(resolver.query("User"))


class TestStatementCounter:
    def test_listener_is_removed(self, engine, sql_resolver):
        with StatementCounter(engine) as statements:
            sql_resolver.get(sql_resolver.query("Tag"))

        sql_resolver.get(sql_resolver.query("Tag"))

        assert len(statements) == 1
        assert list(statements) == statements.matching("from tags")

        statements.clear()
        assert len(statements) == 0
