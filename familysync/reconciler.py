from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from familysync.models import CATEGORIES, EVENTS, SHOPPING, STORES, TODOS, USERS


Patcher = Callable[[Any, str, str], Any]


@dataclass
class SnapshotDiff:
    created: list[Any] = field(default_factory=list)
    updated: list[Any] = field(default_factory=list)
    deleted: list[Any] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.created or self.updated or self.deleted)

    @property
    def upserts(self) -> list[Any]:
        return [*self.created, *self.updated]


def diff(prior: Sequence[Any], next_items: Sequence[Any]) -> SnapshotDiff:
    """Compare two collections by id membership and by deep content.

    ``created`` and ``updated`` keep the order of ``next_items``; ``deleted``
    keeps the order of ``prior``. Entities are compared with ``==``, which for
    the dataclass models is structural equality over every field.
    """
    prior_by_id = {item.id: item for item in prior}
    next_ids = {item.id for item in next_items}
    result = SnapshotDiff()
    result.deleted = [item for item in prior if item.id not in next_ids]
    for item in next_items:
        old_item = prior_by_id.get(item.id)
        if old_item is None:
            result.created.append(item)
        elif old_item != item:
            result.updated.append(item)
    return result


def _swap(values: Iterable[str], old_id: str, new_id: str) -> list[str]:
    swapped: list[str] = []
    for value in values:
        candidate = new_id if value == old_id else value
        if candidate not in swapped:
            swapped.append(candidate)
    return swapped


def patch_category_store(category: Any, old_id: str, new_id: str) -> Any:
    if category.store_id != old_id:
        return category
    return category.with_updates(store_id=new_id)


def patch_item_category(item: Any, old_id: str, new_id: str) -> Any:
    touched = item.creator_category_id == old_id or old_id in item.user_category_ids.values()
    if not touched:
        return item
    return item.with_updates(
        creator_category_id=new_id if item.creator_category_id == old_id else item.creator_category_id,
        user_category_ids={
            user_id: (new_id if category_id == old_id else category_id)
            for user_id, category_id in item.user_category_ids.items()
        },
    )


def patch_event_participant(event: Any, old_id: str, new_id: str) -> Any:
    if old_id not in event.participant_ids:
        return event
    return event.with_updates(participant_ids=_swap(event.participant_ids, old_id, new_id))


def patch_item_user(item: Any, old_id: str, new_id: str) -> Any:
    touched = (
        item.added_by == old_id
        or item.completed_by == old_id
        or old_id in item.seen_by
        or old_id in item.user_category_ids
        or any(entry.user_id == old_id for entry in item.logs)
    )
    if not touched:
        return item
    patched = item.clone()
    for entry in patched.logs:
        if entry.user_id == old_id:
            entry.user_id = new_id
    return patched.with_updates(
        added_by=new_id if item.added_by == old_id else item.added_by,
        completed_by=new_id if item.completed_by == old_id else item.completed_by,
        seen_by=_swap(item.seen_by, old_id, new_id),
        user_category_ids={
            (new_id if user_id == old_id else user_id): category_id
            for user_id, category_id in item.user_category_ids.items()
        },
        logs=patched.logs,
    )


def patch_todo_user(todo: Any, old_id: str, new_id: str) -> Any:
    if todo.user_id != old_id:
        return todo
    return todo.with_updates(user_id=new_id)


# Collections holding foreign references to the key collection, in patch order.
REMAP_DEPENDENCIES: dict[str, tuple[tuple[str, Patcher], ...]] = {
    STORES: ((CATEGORIES, patch_category_store),),
    CATEGORIES: ((SHOPPING, patch_item_category),),
    USERS: (
        (EVENTS, patch_event_participant),
        (SHOPPING, patch_item_user),
        (TODOS, patch_todo_user),
    ),
}


def _remap_owner(items: Sequence[Any], old_id: str, new_id: str) -> list[Any] | None:
    if not any(item.id == old_id for item in items):
        return None
    patched: list[Any] = []
    for item in items:
        if item.id == old_id:
            patched.append(item.with_persisted_id(new_id))
        elif item.id == new_id:
            # Realtime echo of the same create; the local copy keeps its place.
            continue
        else:
            patched.append(item)
    return patched


def apply_remap(
    collections: Mapping[str, Sequence[Any]],
    collection: str,
    old_id: str,
    new_id: str,
) -> dict[str, list[Any]]:
    """Return patched copies of every collection touched by ``old_id -> new_id``.

    The owning collection is patched first, then each dependent collection in
    ``REMAP_DEPENDENCIES`` order. Collections absent from ``collections`` are
    skipped; untouched collections are not part of the result.
    """
    changed: dict[str, list[Any]] = {}
    if collection in collections:
        owner = _remap_owner(collections[collection], old_id, new_id)
        if owner is not None:
            changed[collection] = owner
    if old_id == new_id:
        return changed
    for dependent, patcher in REMAP_DEPENDENCIES.get(collection, ()):
        if dependent not in collections:
            continue
        source = changed.get(dependent, collections[dependent])
        patched = [patcher(item, old_id, new_id) for item in source]
        if any(a is not b for a, b in zip(patched, source)):
            changed[dependent] = patched
    return changed
