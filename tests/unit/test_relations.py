from __future__ import annotations

from typing import Any

import pytest

from sqla_batchloads import Custom, MemoryAdapter, Store, UnknownRelation
from sqla_batchloads.predicate import In, Predicate
from sqla_batchloads.relations import HasManyThrough

from ..adapters import GateAdapter, RecordingAdapter, SpyAdapter
from ..models import Tables, bind_tables


pytestmark = pytest.mark.anyio

Data = dict[str, list[dict[str, Any]]]


class TestHasMany:
    async def test_attaches_lists(self, tables: Tables, data: Data) -> None:
        users = await tables.users.with_("comments").load()

        assert users[0]["comments"] == [data["comment"][2]]
        assert [c["text"] for c in users[1]["comments"]] == ["gorgeous", "awesome"]

    async def test_empty_list_when_nothing_matches(self, tables: Tables, data: Data) -> None:
        data["user"].append({"id": 9, "name": "lonely", "age": 1})

        lonely = await tables.users.with_("comments").get(9)

        assert lonely is not None
        assert lonely["comments"] == []

    async def test_does_not_touch_stored_rows(self, tables: Tables, data: Data) -> None:
        await tables.users.with_("comments").load()

        assert "comments" not in data["user"][0]

    async def test_one_lookup_for_all_parents(self, data: Data) -> None:
        spy = SpyAdapter(data)
        tables = bind_tables(Store(spy))

        await tables.users.with_("comments").load()

        assert spy.log == [("get", "user"), ("get", "comment")]

    async def test_target_query_conditions_apply(self, memory_store: Store, data: Data) -> None:
        users = memory_store("user")
        users.has_many(memory_store("comment").where_like({"text": "GOR"}))

        loaded = await users.with_("comments").load()

        assert [len(user["comments"]) for user in loaded] == [0, 1, 0]


    async def test_foreign_key_follows_calling_table(self) -> None:
        adapter = RecordingAdapter(rows=[{"id": 1}])
        store = Store(adapter)
        users = store("user")
        users.has_many(store("comment"))

        await users.table("member").with_("comments").load()
        await users.with_("comments").load()

        member, member_lookup, user, user_lookup = adapter.calls
        assert (member.table_name, user.table_name) == ("member", "user")
        assert member_lookup.table_name == user_lookup.table_name == "comment"
        assert member_lookup.where == Predicate({"memberId": In("memberId", (1,))})
        assert user_lookup.where == Predicate({"userId": In("userId", (1,))})
        assert users.relations["comments"].fk is None  # type: ignore[attr-defined]


class TestBelongsTo:
    async def test_attaches_parent_row(self, tables: Tables, data: Data) -> None:
        comments = await tables.comments.with_("user").load()

        assert comments[0]["user"] == data["user"][1]

    async def test_alias_key(self, tables: Tables, data: Data) -> None:
        comments = await tables.comments.with_("author").load()

        assert comments[0]["author"] == data["user"][1]

    async def test_unmatched_rows_are_dropped(self, tables: Tables, data: Data) -> None:
        data["comment"].append({"id": 6, "userId": 99, "text": "orphan"})
        data["comment"].append({"id": 7, "userId": None, "text": "anonymous"})

        comments = await tables.comments.with_("user").load()

        assert [c["id"] for c in comments] == [1, 2, 4, 5]

    async def test_no_lookup_without_keys(self, data: Data) -> None:
        data["comment"] = [{"id": 1, "userId": None, "text": "anonymous"}]
        spy = SpyAdapter(data)
        tables = bind_tables(Store(spy))

        assert await tables.comments.with_("user").load() == []
        assert spy.calls("get", "user") == 0

    async def test_row_filter_limits_participants(self, memory_store: Store, data: Data) -> None:
        data["comment"].append({"id": 6, "userId": 99, "text": "orphan"})
        users = memory_store("user")
        comments = memory_store("comment")
        comments.belongs_to(users, row_filter=lambda row: row["id"] != 6)

        loaded = await comments.with_("user").load()

        assert [c["id"] for c in loaded] == [1, 2, 4, 5, 6]
        assert "user" not in loaded[-1]

    async def test_explicit_keys(self, memory_store: Store, data: Data) -> None:
        data["profile"] = [{"id": 1, "owner": "klaus", "bio": "hi"}]
        profiles = memory_store("profile")
        profiles.belongs_to(memory_store("user"), fk="owner", pk="name")

        loaded = await profiles.with_("user").load()

        assert loaded[0]["user"] == data["user"][1]


class TestExtendWith:
    async def test_merges_missing_fields(self, tables: Tables) -> None:
        comments = await tables.comments.with_("user_fields").load()

        assert comments[0] == {"id": 1, "userId": 2, "text": "gorgeous", "name": "klaus", "age": 27}


class TestHasOne:
    async def test_attaches_row_or_none(self, memory_store: Store, data: Data) -> None:
        data["profile"] = [{"id": 10, "userId": 2, "bio": "klaus bio"}]
        users = memory_store("user")
        users.has_one(memory_store("profile"))

        loaded = await users.with_("profile").load()

        assert [user["profile"] for user in loaded] == [None, data["profile"][0], None]


class TestHasManyThrough:
    async def test_attaches_targets(self, tables: Tables, data: Data) -> None:
        users = await tables.users.with_("friends").load()

        assert users[0]["friends"][0]["name"] == data["user"][1]["name"]
        assert users[2]["friends"] == []

    async def test_link_fks_hidden_unless_requested(self, tables: Tables) -> None:
        tables.users.has_many_through(
            tables.users,
            tables.friends,
            relation_key="friends_with_keys",
            from_fk="user1Id",
            to_fk="user2Id",
            include_fks=True,
        )

        users = await tables.users.with_("friends", "friends_with_keys").load()

        assert users[0]["friends"][0] == {"id": 2, "name": "klaus", "age": 27}
        assert users[0]["friends_with_keys"][0] == {"id": 2, "name": "klaus", "age": 27, "user1Id": 1, "user2Id": 2}

    async def test_two_lookups(self, data: Data) -> None:
        spy = SpyAdapter(data)
        tables = bind_tables(Store(spy))

        await tables.users.with_("friends").load()

        assert spy.log == [("get", "user"), ("get", "friend"), ("get", "user")]

    async def test_extra_link_columns_are_carried(self, tables: Tables, data: Data) -> None:
        data["tag"] += [{"id": 1, "name": "python"}, {"id": 2, "name": "sql"}]
        data["user_tag"] += [
            {"userId": 1, "tagId": 2, "level": 5},
            {"userId": 1, "tagId": 1, "level": 3},
        ]

        heiner = await tables.users.with_("tags").get(1)

        assert heiner is not None
        assert heiner["tags"] == [{"id": 2, "name": "sql", "level": 5}, {"id": 1, "name": "python", "level": 3}]

    def test_requires_through(self, tables: Tables) -> None:
        with pytest.raises(TypeError):
            HasManyThrough(query=tables.users, relation_key="x")

    def test_resolve_keys_needs_parent(self, tables: Tables) -> None:
        relation = tables.users.relations["tags"]
        assert isinstance(relation, HasManyThrough)

        with pytest.raises(ValueError, match="parent="):
            relation.resolve_keys()
        assert relation.resolve_keys(tables.users.descriptor) == ("id", "userId", "id", "tagId")


class TestNesting:
    async def test_nested_path(self, tables: Tables, data: Data) -> None:
        users = await tables.users.with_("comments:author").load()

        comment = users[0]["comments"][0]
        assert (comment["id"], comment["text"], comment["userId"]) == (4, "splendid", 1)
        assert comment["author"] == data["user"][0]

    async def test_nested_through(self, tables: Tables) -> None:
        users = await tables.users.with_("friends:comments").load()

        friend = users[0]["friends"][0]
        assert friend["name"] == "klaus"
        assert [c["text"] for c in friend["comments"]] == ["gorgeous", "awesome"]

    async def test_nested_mapping(self, tables: Tables) -> None:
        users = await tables.users.with_({"friends": {"comments": {"author": True}}}).load()

        assert users[0]["friends"][0]["comments"][0]["author"]["name"] == "klaus"

    async def test_siblings_at_each_level(self, data: Data) -> None:
        spy = SpyAdapter(data)
        tables = bind_tables(Store(spy))

        users = await tables.users.with_("comments:author", "friends").load()

        assert users[0]["comments"][0]["author"]["id"] == 1
        assert users[0]["friends"][0]["id"] == 2
        # one lookup per relation, whatever the number of rows
        assert spy.calls("get", "comment") == 1
        assert spy.calls("get", "friend") == 1
        assert spy.calls("get", "user") == 3


class TestActivation:
    async def test_without(self, tables: Tables) -> None:
        users = await tables.users.with_("friends:comments").without("friends").load()

        assert "friends" not in users[0]

    async def test_without_nested(self, tables: Tables) -> None:
        users = await tables.users.with_("friends:comments").without("friends:comments").load()

        assert "comments" not in users[0]["friends"][0]

    async def test_without_wildcard(self, tables: Tables) -> None:
        users = await tables.users.with_("friends:comments", "comments").without("*").load()

        assert "friends" not in users[0]
        assert "comments" not in users[0]

    async def test_unknown_relation(self, tables: Tables) -> None:
        with pytest.raises(UnknownRelation, match="Unknown relation 'comment' for query on table 'user'") as exc:
            await tables.users.with_("comment").load()

        assert exc.value.key == "comment"
        assert exc.value.table == "user"
        assert "comments" in exc.value.known

    async def test_unknown_nested_relation(self, tables: Tables) -> None:
        with pytest.raises(UnknownRelation, match="on table 'comment'"):
            await tables.users.with_("comments:friends").load()

    async def test_unknown_relation_on_empty_result(self, tables: Tables) -> None:
        assert await tables.users.where({"id": []}).with_("nope").load() == []


class TestQueries:
    async def test_filter_and_first(self, tables: Tables) -> None:
        user = await tables.users.with_("comments").first({"age": 27})

        assert user is not None
        assert user["id"] == 2
        assert len(user["comments"]) == 2

    async def test_reuse_after_derivation(self, tables: Tables, data: Data) -> None:
        heiner = tables.users.where({"name": "heiner"})
        aged = heiner.where({"age": 100})

        assert await aged.load() == []
        assert await tables.users.load() == data["user"]
        assert await heiner.load() == [data["user"][0]]

    async def test_custom_condition(self, tables: Tables, data: Data) -> None:
        assert await tables.users.where({"age": Custom("age", lambda age: age > 25)}).load() == data["user"][1:]


async def test_adapter_instance(memory_adapter: MemoryAdapter, tables: Tables) -> None:
    assert tables.users.store.adapter is memory_adapter


async def test_sibling_relations_are_fetched_concurrently(data: Data) -> None:
    gate = GateAdapter(data, expected={("get", "comment"), ("get", "friend")})
    tables = bind_tables(Store(gate))

    users = await tables.users.with_("comments", "friends").load()

    assert gate.arrived == gate.expected
    assert [len(user["friends"]) for user in users] == [1, 1, 0]
