from datetime import datetime

from sqlalchemy_relations import (
    EntityRegistry, EntityType, Field, FieldType, Record,
    belongs_to, belongs_to_many, has_many, has_many_through, morph_many,
)


def build_registry():
    registry = EntityRegistry()
    registry.register_all([
        EntityType("Affiliation", [Field("name")], table="affiliations", relations=[
            has_many("users", "User", foreign_key="affiliation_id"),
            has_many_through("posts", "Post", through="User", first_key="affiliation_id", second_key="user_id"),
        ]),
        EntityType("User", [
            Field("name", nullable=False),
            Field("email"),
            Field("affiliation_id", FieldType.INTEGER, index=True),
        ], table="users", relations=[
            belongs_to("affiliation", "Affiliation"),
            has_many("posts", "Post", foreign_key="user_id"),
            has_many("comments", "Comment", foreign_key="user_id"),
        ]),
        EntityType("Post", [
            Field("user_id", FieldType.INTEGER, index=True),
            Field("title", nullable=False),
            Field("content"),
            Field("votes", FieldType.INTEGER, default=0),
            Field("created_at", FieldType.TIMESTAMP),
        ], table="posts", relations=[
            belongs_to("user", "User"),
            has_many("comments", "Comment", foreign_key="post_id"),
            has_many("approved_comments", "Comment", foreign_key="post_id", constraints=[("approved", True)]),
            belongs_to_many("likes", "User", table="likes", foreign_pivot_key="post_id",
                            related_pivot_key="user_id", timestamps=True),
            belongs_to_many("tags", "Tag", table="post_tag", foreign_pivot_key="post_id",
                            related_pivot_key="tag_id", pivot_columns=[Field("weight", FieldType.INTEGER)]),
        ]),
        EntityType("Comment", [
            Field("post_id", FieldType.INTEGER, index=True),
            Field("user_id", FieldType.INTEGER, index=True),
            Field("body"),
            Field("approved", FieldType.BOOLEAN, default=False),
        ], table="comments", relations=[
            belongs_to("post", "Post"),
            belongs_to("author", "User", foreign_key="user_id"),
        ]),
        EntityType("Tag", [Field("name")], table="tags", relations=[
            belongs_to_many("posts", "Post", table="post_tag", foreign_pivot_key="tag_id",
                            related_pivot_key="post_id", pivot_columns=[Field("weight", FieldType.INTEGER)]),
        ]),
        EntityType("Series", [Field("title")], table="series", relations=[
            morph_many("videos", "Video", "watchable"),
        ]),
        EntityType("Lesson", [Field("title")], table="lessons", relations=[
            morph_many("videos", "Video", "watchable"),
        ]),
        EntityType("Video", [
            Field("title"),
            Field("watchable_id", FieldType.INTEGER, index=True),
            Field("watchable_type"),
        ], table="videos"),
    ])
    return registry


ROWS = {
    "Affiliation": [
        {"id": 1, "name": "Acme"},
        {"id": 2, "name": "Globex"},
        {"id": 3, "name": "Initech"},
    ],
    "User": [
        {"id": 1, "name": "alice", "email": "alice@example.com", "affiliation_id": 1},
        {"id": 2, "name": "bob", "email": "bob@example.com", "affiliation_id": 1},
        {"id": 3, "name": "carol", "email": None, "affiliation_id": 2},
        {"id": 4, "name": "dave", "email": "dave@example.com", "affiliation_id": None},
    ],
    "Post": [
        {"id": 1, "user_id": 1, "title": "Hello", "content": "First post", "votes": 10,
         "created_at": datetime(2024, 1, 1, 9, 30)},
        {"id": 2, "user_id": 1, "title": "Again", "content": "Second post", "votes": 5,
         "created_at": datetime(2024, 1, 2, 10, 0)},
        {"id": 3, "user_id": 2, "title": "Bob writes", "content": None, "votes": 7,
         "created_at": datetime(2024, 1, 2, 18, 45)},
        {"id": 4, "user_id": 3, "title": "Carol writes", "content": "Short", "votes": 0,
         "created_at": datetime(2024, 1, 3, 8, 0)},
    ],
    "Comment": [
        {"id": 1, "post_id": 1, "user_id": 2, "body": "Nice", "approved": True},
        {"id": 2, "post_id": 1, "user_id": 3, "body": "Meh", "approved": False},
        {"id": 3, "post_id": 3, "user_id": 1, "body": "Cool", "approved": True},
    ],
    "Tag": [
        {"id": 1, "name": "python"},
        {"id": 2, "name": "sql"},
        {"id": 3, "name": "orm"},
    ],
    "Series": [
        {"id": 1, "title": "Python from scratch"},
        {"id": 2, "title": "Nothing yet"},
    ],
    "Lesson": [
        {"id": 1, "title": "Intro"},
    ],
    "Video": [
        {"id": 1, "title": "Installation", "watchable_id": 1, "watchable_type": "Series"},
        {"id": 2, "title": "Routing", "watchable_id": 1, "watchable_type": "Series"},
        {"id": 3, "title": "Welcome", "watchable_id": 1, "watchable_type": "Lesson"},
    ],
}

# (entity, relation) => [(parent key, related key, extra pivot values)]
PIVOT_ROWS = {
    ("Post", "tags"): [
        (1, 1, {"weight": 1}),
        (1, 2, {"weight": 2}),
        (3, 1, {"weight": 5}),
    ],
    ("Post", "likes"): [
        (1, 2, {}),
        (1, 3, {}),
        (3, 1, {}),
    ],
}


def seed_store(store):
    for name, rows in ROWS.items():
        store.insert_many(name, rows)

    for (name, relation), links in PIVOT_ROWS.items():
        entity = store.registry.lookup(name)
        for parent_key, related_key, values in links:
            parent = Record(entity, store.get_by_primary_key(entity, parent_key))
            store.attach(parent, relation, [related_key], **values)

    return store


def seed_connection(conn, registry, metadata):
    for name, rows in ROWS.items():
        table = metadata.tables[registry.lookup(name).table]
        conn.execute(table.insert(), rows)

    for (name, relation), links in PIVOT_ROWS.items():
        pivot = registry.lookup(name).get_relation(relation).pivot
        rows = []
        for parent_key, related_key, values in links:
            row = {column: None for column in pivot.column_names}
            row.update(values)
            row[pivot.foreign_pivot_key] = parent_key
            row[pivot.related_pivot_key] = related_key
            rows.append(row)
        conn.execute(metadata.tables[pivot.table].insert(), rows)
