from __future__ import annotations

import functools
from typing import Any, Callable, Mapping

from familysync.household_store import HouseholdStore
from familysync.models import CATEGORIES, EVENTS, SHOPPING, STORES, TODOS, USERS, entity_from_dict
from familysync.remote import RemoteCollection, from_record
from familysync.state_store import StateStore


Notifier = Callable[[str], None]

# Field holding the user that created a record; own creations are already present locally.
OWNER_FIELDS: dict[str, str] = {
    SHOPPING: "added_by",
    TODOS: "user_id",
    USERS: "id",
}

NOTIFICATION_LABELS: dict[str, tuple[str, str]] = {
    EVENTS: ("New event", "title"),
    SHOPPING: ("New shopping item", "content"),
    TODOS: ("New to-do", "content"),
    USERS: ("New household member", "username"),
    STORES: ("New store", "name"),
    CATEGORIES: ("New category", "name"),
}


class RealtimeMergeHandler:
    """Folds remote change notifications into the local store.

    The handler only writes to ``HouseholdStore``; it never goes through the
    sync engine, so a remote change is never pushed back to the remote store.
    """

    def __init__(
        self,
        store: HouseholdStore,
        session_user_id: str = "",
        notifier: Notifier | None = None,
        state_store: StateStore | None = None,
    ) -> None:
        self.store = store
        self.session_user_id = str(session_user_id or "")
        self.notifier = notifier
        self.state_store = state_store
        self._unsubscribers: list[Callable[[], None]] = []

    def attach(self, remotes: Mapping[str, RemoteCollection]) -> None:
        for collection, remote in remotes.items():
            self._unsubscribers.append(remote.subscribe(functools.partial(self.handle, collection)))

    def detach(self) -> None:
        while self._unsubscribers:
            self._unsubscribers.pop()()

    def _audit(self, collection: str, entity_id: str, action: str, details: dict[str, Any]) -> None:
        if self.state_store is not None:
            self.state_store.record_audit_event(
                collection=collection,
                entity_id=entity_id,
                action=action,
                details=details,
            )

    def handle(self, collection: str, action: str, record: dict[str, Any]) -> bool:
        """Apply one notification; returns whether the local store changed."""
        record_id = str(record.get("id", "") or "")
        try:
            if action == "create":
                return self._on_create(collection, record)
            if action == "update":
                return self._on_update(collection, record)
            if action == "delete":
                return self.store.remove(collection, record_id)
        except (KeyError, TypeError, ValueError) as exc:
            self._audit(
                collection,
                record_id or "?",
                "realtime_rejected",
                {"action": action, "error": f"{type(exc).__name__}: {exc}"},
            )
        return False

    def _is_own(self, collection: str, fields: dict[str, Any]) -> bool:
        owner_field = OWNER_FIELDS.get(collection)
        if not owner_field or not self.session_user_id:
            return False
        return str(fields.get(owner_field, "") or "") == self.session_user_id

    def _on_create(self, collection: str, record: dict[str, Any]) -> bool:
        fields = from_record(collection, record)
        entity = entity_from_dict(collection, fields)
        if self.store.claim_echo(collection, record):
            # Local create coming back; the optimistic copy is already in place.
            return False
        if self._is_own(collection, fields):
            self._audit(collection, entity.id, "realtime_ignored_own", {"owner": self.session_user_id})
            return False
        with self.store.lock:
            for existing in self.store.get(collection):
                if existing.id == entity.id:
                    return False
                if collection == EVENTS and entity.ical_uid and existing.ical_uid == entity.ical_uid:
                    return False
            self.store.insert(collection, entity, front=True)
        self._notify(collection, entity)
        return True

    def _on_update(self, collection: str, record: dict[str, Any]) -> bool:
        fields = from_record(collection, record)
        entity_id = str(fields.get("id", "") or "")
        with self.store.lock:
            existing = self.store.find(collection, entity_id)
            if existing is None:
                return False
            merged = entity_from_dict(collection, {**existing.to_dict(), **fields})
            if merged == existing:
                return False
            return self.store.put(collection, merged)

    def _notify(self, collection: str, entity: Any) -> None:
        if self.notifier is None:
            return
        label, attribute = NOTIFICATION_LABELS.get(collection, ("New item", "id"))
        self.notifier(f"{label}: {getattr(entity, attribute, '') or entity.id}")
