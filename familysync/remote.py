from __future__ import annotations

import secrets
import string
import threading
from typing import Any, Callable, Protocol

import requests

from familysync.models import (
    CATEGORIES,
    ENTITY_TYPES,
    EVENTS,
    SHOPPING,
    STORES,
    TODOS,
    USERS,
    Frequency,
    RemoteConfig,
    entity_from_dict,
    parse_iso_date,
)
from familysync.recurrence import format_rule, parse_rule


ChangeListener = Callable[[str, dict[str, Any]], None]

# Entity field -> remote record field, where the names differ.
WIRE_FIELDS: dict[str, dict[str, str]] = {
    EVENTS: {
        "participant_ids": "participants",
        "start": "startTime",
        "end": "endTime",
        "all_day": "isAllDay",
        "ical_uid": "icalUID",
        "exception_dates": "exdates",
        "recurrence": "rrule",
    },
    SHOPPING: {
        "added_by": "addedBy",
        "added_at": "created",
        "in_cart": "isInCart",
        "private": "isPrivate",
        "user_category_ids": "userCategoryIds",
        "creator_category_id": "category",
        "seen_by": "seenBy",
        "completed_by": "completedBy",
        "completed_at": "completedAt",
    },
    TODOS: {
        "user_id": "userId",
        "completed": "isCompleted",
        "private": "isPrivate",
    },
    USERS: {
        "username": "name",
        "color_index": "colorIndex",
        "avatar": "emoji",
        "admin": "isAdmin",
        "font_scale": "fontSizeScale",
    },
    STORES: {},
    CATEGORIES: {"store_id": "storeId"},
}

REMOTE_COLLECTION_NAMES: dict[str, str] = {
    EVENTS: "events",
    SHOPPING: "shopping_items",
    TODOS: "todos",
    USERS: "users",
    STORES: "shopping_stores",
    CATEGORIES: "shopping_categories",
}

_ID_ALPHABET = string.ascii_lowercase + string.digits


class RemoteError(RuntimeError):
    pass


class RemoteCollection(Protocol):
    def create(self, entity: Any) -> Any: ...

    def update(self, entity: Any) -> None: ...

    def delete(self, entity_id: str) -> None: ...

    def subscribe(self, on_change: ChangeListener) -> Callable[[], None]: ...


def to_record(collection: str, entity: Any) -> dict[str, Any]:
    """Map an entity to the remote record shape.

    Provisional ids are never sent; the remote store assigns the real one.
    """
    data = entity.to_dict()
    data.pop("id_state", None)
    if not entity.persisted:
        data.pop("id", None)
    if collection == EVENTS:
        rule = getattr(entity, "recurrence", None)
        data["recurrence"] = format_rule(rule, all_day=entity.all_day) if rule is not None else ""
    if collection == USERS:
        data.pop("photo_url", None)
    mapping = WIRE_FIELDS.get(collection, {})
    return {mapping.get(key, key): value for key, value in data.items()}


def _legacy_recurrence(value: Any) -> dict[str, Any] | None:
    # Older records stored {"freq": ..., "until": ...} instead of rule text.
    if not isinstance(value, dict):
        return None
    freq = str(value.get("freq", "") or "").upper()
    if freq not in Frequency.__members__:
        return None
    until = parse_iso_date(value.get("until"))
    return {"frequency": freq, "until": until.isoformat() if until else None}


def from_record(collection: str, record: dict[str, Any]) -> dict[str, Any]:
    """Map a (possibly partial) remote record to entity field values.

    Only fields present in ``record`` are returned, so the result can be
    shallow-merged over an existing entity.
    """
    reverse = {wire: key for key, wire in WIRE_FIELDS.get(collection, {}).items()}
    allowed = entity_field_names(collection)
    fields: dict[str, Any] = {}
    for wire_key, value in record.items():
        key = reverse.get(wire_key, wire_key)
        if collection == EVENTS and wire_key == "recurrence":
            legacy = _legacy_recurrence(value)
            if legacy is not None and not record.get("rrule"):
                fields["recurrence"] = legacy
            continue
        if collection == EVENTS and key == "recurrence":
            rule = parse_rule(str(value or ""))
            fields["recurrence"] = rule.to_dict() if rule is not None else None
            continue
        if key in allowed and key != "id_state":
            fields[key] = value
    if collection == EVENTS and "recurrence" in fields and fields["recurrence"] is None:
        fields["exception_dates"] = []
    fields["id_state"] = "persisted"
    return fields


def entity_field_names(collection: str) -> set[str]:
    return ENTITY_TYPES[collection].field_names()


def entity_from_record(collection: str, record: dict[str, Any]) -> Any:
    return entity_from_dict(collection, from_record(collection, record))


class _Listeners:
    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []
        self._listener_lock = threading.Lock()

    def subscribe(self, on_change: ChangeListener) -> Callable[[], None]:
        with self._listener_lock:
            self._listeners.append(on_change)

        def unsubscribe() -> None:
            with self._listener_lock:
                if on_change in self._listeners:
                    self._listeners.remove(on_change)

        return unsubscribe

    def dispatch(self, action: str, record: dict[str, Any]) -> None:
        with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(action, dict(record))


class RestRemoteCollection(_Listeners):
    """Record API client for one collection of the household backend.

    This client does not receive push notifications itself. Listeners added
    with ``subscribe`` only fire when a realtime transport supplied by the
    caller hands each change to ``dispatch``.
    """

    def __init__(
        self,
        config: RemoteConfig,
        collection: str,
        *,
        token: str = "",
        session: requests.Session | None = None,
    ) -> None:
        super().__init__()
        self.config = config
        self.collection = collection
        self.remote_name = REMOTE_COLLECTION_NAMES[collection]
        self.token = token
        self.session = session or requests.Session()

    def _records_endpoint(self, record_id: str = "") -> str:
        base = self.config.base_url.rstrip("/")
        endpoint = f"{base}/api/collections/{self.remote_name}/records"
        return f"{endpoint}/{record_id}" if record_id else endpoint

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = self.token
        return headers

    def _request(self, method: str, url: str, payload: dict[str, Any] | None = None) -> requests.Response:
        try:
            response = self.session.request(
                method,
                url,
                headers=self._headers(),
                json=payload,
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise RemoteError(f"{method} {url} failed: {type(exc).__name__}: {exc}") from exc
        return response

    def authenticate(self) -> str:
        base = self.config.base_url.rstrip("/")
        response = self._request(
            "POST",
            f"{base}/api/collections/users/auth-with-password",
            {"identity": self.config.username, "password": self.config.password},
        )
        if not response.ok:
            raise RemoteError(f"HTTP {response.status_code}: {response.text[:300]}")
        self.token = str(response.json().get("token", ""))
        return self.token

    def create(self, entity: Any) -> Any:
        response = self._request("POST", self._records_endpoint(), to_record(self.collection, entity))
        if not response.ok:
            raise RemoteError(f"HTTP {response.status_code}: {response.text[:300]}")
        record_id = str(response.json().get("id", "")).strip()
        if not record_id:
            raise RemoteError("create response carries no record id")
        return entity.with_persisted_id(record_id)

    def update(self, entity: Any) -> None:
        response = self._request("PATCH", self._records_endpoint(entity.id), to_record(self.collection, entity))
        if not response.ok:
            raise RemoteError(f"HTTP {response.status_code}: {response.text[:300]}")

    def delete(self, entity_id: str) -> None:
        response = self._request("DELETE", self._records_endpoint(entity_id))
        if response.status_code == 404:
            return
        if not response.ok:
            raise RemoteError(f"HTTP {response.status_code}: {response.text[:300]}")


class InMemoryRemoteCollection(_Listeners):
    """Remote store stand-in keeping records in a dict.

    Assigns 15-character ids like the household backend, fires change
    notifications synchronously, and lets a previously persisted entity be
    re-created under its old id (used when undo resurrects a deleted entity).
    """

    def __init__(self, collection: str) -> None:
        super().__init__()
        self.collection = collection
        self.records: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    def _new_id(self) -> str:
        while True:
            candidate = "".join(secrets.choice(_ID_ALPHABET) for _ in range(15))
            if candidate not in self.records:
                return candidate

    def create(self, entity: Any) -> Any:
        with self._lock:
            record = to_record(self.collection, entity)
            record_id = str(record.get("id", "") or "")
            if not record_id or record_id in self.records:
                record_id = self._new_id()
            record["id"] = record_id
            self.records[record_id] = record
        self.dispatch("create", record)
        return entity.with_persisted_id(record_id)

    def update(self, entity: Any) -> None:
        with self._lock:
            if entity.id not in self.records:
                raise RemoteError(f"{self.collection} record not found: {entity.id}")
            record = to_record(self.collection, entity)
            record["id"] = entity.id
            self.records[entity.id] = record
        self.dispatch("update", record)

    def delete(self, entity_id: str) -> None:
        with self._lock:
            record = self.records.pop(entity_id, None)
        if record is None:
            raise RemoteError(f"{self.collection} record not found: {entity_id}")
        self.dispatch("delete", record)
