import json
import unittest
from datetime import datetime, timezone

from familysync.models import (
    CATEGORIES,
    EVENTS,
    SHOPPING,
    STORES,
    TODOS,
    USERS,
    Event,
    IdState,
    ShoppingCategory,
    ShoppingItem,
    ShoppingLogEntry,
    ShoppingLogType,
    ShoppingStore,
    TodoItem,
    User,
)
from familysync.reconciler import apply_remap, diff


def _todo(todo_id: str, content: str = "Task", user_id: str = "u1") -> TodoItem:
    return TodoItem(id=todo_id, content=content, user_id=user_id)


class DiffTests(unittest.TestCase):
    def test_diff_splits_created_updated_deleted(self) -> None:
        prior = [_todo("a"), _todo("b"), _todo("c")]
        next_items = [_todo("a"), _todo("b", content="Changed"), _todo("d")]
        result = diff(prior, next_items)
        self.assertEqual([x.id for x in result.created], ["d"])
        self.assertEqual([x.id for x in result.updated], ["b"])
        self.assertEqual([x.id for x in result.deleted], ["c"])

    def test_diff_uses_structural_equality(self) -> None:
        prior = [_todo("a"), _todo("b")]
        next_items = [item.clone() for item in prior]
        result = diff(prior, next_items)
        self.assertTrue(result.empty)

    def test_diff_id_sets_partition_next(self) -> None:
        prior = [_todo(str(i), content=f"t{i}") for i in range(6)]
        next_items = [_todo("0", "t0"), _todo("2", "changed"), _todo("4", "t4"), _todo("9", "new")]
        result = diff(prior, next_items)
        unchanged = {"0", "4"}
        next_ids = {x.id for x in next_items}
        self.assertEqual({x.id for x in result.upserts}, next_ids - unchanged)
        self.assertEqual({x.id for x in result.deleted}, {x.id for x in prior} - next_ids)


class RemapTests(unittest.TestCase):
    def test_user_remap_reaches_every_reference(self) -> None:
        started = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        collections = {
            USERS: [User(id="tmp-user-1", username="Robin"), User(id="u2", username="Kim", id_state=IdState.PERSISTED)],
            EVENTS: [Event(id="e1", title="Dentist", start=started, participant_ids=["tmp-user-1", "u2"])],
            SHOPPING: [
                ShoppingItem(
                    id="s1",
                    content="Apples",
                    added_by="tmp-user-1",
                    seen_by=["tmp-user-1"],
                    user_category_ids={"tmp-user-1": "fruit"},
                    logs=[
                        ShoppingLogEntry(
                            id="l1",
                            type=ShoppingLogType.CREATE,
                            user_id="tmp-user-1",
                            timestamp=started,
                        )
                    ],
                )
            ],
            TODOS: [_todo("t1", user_id="tmp-user-1"), _todo("t2", user_id="u2")],
        }
        changed = apply_remap(collections, USERS, "tmp-user-1", "persistedid0001")
        collections.update(changed)

        self.assertEqual(set(changed), {USERS, EVENTS, SHOPPING, TODOS})
        self.assertEqual(collections[USERS][0].id, "persistedid0001")
        self.assertTrue(collections[USERS][0].persisted)
        self.assertEqual(collections[EVENTS][0].participant_ids, ["persistedid0001", "u2"])
        item = collections[SHOPPING][0]
        self.assertEqual(item.added_by, "persistedid0001")
        self.assertEqual(item.seen_by, ["persistedid0001"])
        self.assertEqual(item.user_category_ids, {"persistedid0001": "fruit"})
        self.assertEqual(item.logs[0].user_id, "persistedid0001")
        self.assertEqual(collections[TODOS][0].user_id, "persistedid0001")
        dumped = json.dumps({name: [x.to_dict() for x in items] for name, items in collections.items()})
        self.assertNotIn("tmp-user-1", dumped)

    def test_store_remap_patches_categories(self) -> None:
        collections = {
            STORES: [ShoppingStore(id="tmp-store", name="Market")],
            CATEGORIES: [
                ShoppingCategory(id="c1", name="Fruit", store_id="tmp-store"),
                ShoppingCategory(id="c2", name="Bakery", store_id="other"),
            ],
        }
        changed = apply_remap(collections, STORES, "tmp-store", "store000000001")
        self.assertEqual(changed[CATEGORIES][0].store_id, "store000000001")
        self.assertEqual(changed[CATEGORIES][1].store_id, "other")

    def test_category_remap_patches_shopping_items(self) -> None:
        collections = {
            CATEGORIES: [ShoppingCategory(id="tmp-cat", name="Fruit")],
            SHOPPING: [
                ShoppingItem(
                    id="s1",
                    content="Pears",
                    added_by="u1",
                    creator_category_id="tmp-cat",
                    user_category_ids={"u2": "tmp-cat"},
                )
            ],
        }
        changed = apply_remap(collections, CATEGORIES, "tmp-cat", "cat00000000001")
        item = changed[SHOPPING][0]
        self.assertEqual(item.creator_category_id, "cat00000000001")
        self.assertEqual(item.user_category_ids, {"u2": "cat00000000001"})

    def test_remap_drops_echo_with_persisted_id(self) -> None:
        echo = _todo("persisted00001", content="Echo")
        local = _todo("tmp-todo", content="Local")
        changed = apply_remap({TODOS: [echo, local]}, TODOS, "tmp-todo", "persisted00001")
        self.assertEqual(len(changed[TODOS]), 1)
        self.assertEqual(changed[TODOS][0].content, "Local")
        self.assertTrue(changed[TODOS][0].persisted)

    def test_remap_of_unknown_id_changes_nothing(self) -> None:
        self.assertEqual(apply_remap({TODOS: [_todo("a")]}, TODOS, "missing", "x"), {})


if __name__ == "__main__":
    unittest.main()
