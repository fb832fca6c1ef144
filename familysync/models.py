from __future__ import annotations

import copy
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any

from dateutil import tz as dateutil_tz


EVENTS = "events"
SHOPPING = "shopping"
TODOS = "todos"
USERS = "users"
STORES = "shopping_stores"
CATEGORIES = "shopping_categories"

TRACKED_COLLECTIONS = (EVENTS, SHOPPING, TODOS, USERS)
DEPENDENT_COLLECTIONS = (STORES, CATEGORIES)
ALL_COLLECTIONS = TRACKED_COLLECTIONS + DEPENDENT_COLLECTIONS


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def date_to_datetime(value: date, tzinfo: Any = timezone.utc) -> datetime:
    return datetime.combine(value, time.min, tzinfo=tzinfo)


def new_local_id() -> str:
    return uuid.uuid4().hex


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return serialize_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class IdState(str, Enum):
    LOCAL = "local"
    PERSISTED = "persisted"


class Frequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Priority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    URGENT = "URGENT"


class ShoppingLogType(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    COMPLETE = "COMPLETE"
    RESTORE = "RESTORE"


def _priority(value: Any) -> Priority:
    try:
        return Priority(str(getattr(value, "value", value) or "NORMAL").upper())
    except ValueError:
        return Priority.NORMAL


def _id_state(value: Any) -> IdState:
    try:
        return IdState(str(getattr(value, "value", value) or "local").lower())
    except ValueError:
        return IdState.LOCAL


def _str_list(values: Any) -> list[str]:
    return [str(x).strip() for x in values or [] if str(x).strip()]


class EntityMixin:
    """Shared behaviour of every synchronized entity.

    Entities are plain mutable dataclasses, but the engines treat them as values:
    every change goes through ``with_updates`` which returns a copy.
    """

    id: str
    id_state: IdState

    @property
    def persisted(self) -> bool:
        return self.id_state == IdState.PERSISTED

    def clone(self):
        return copy.deepcopy(self)

    def with_updates(self, **kwargs: Any):
        return replace(self.clone(), **kwargs)

    def with_persisted_id(self, persisted_id: str):
        return self.with_updates(id=persisted_id, id_state=IdState.PERSISTED)

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: Frequency | None = None
    until: date | None = None
    raw: str = ""

    @property
    def editable(self) -> bool:
        # Rules carried verbatim cannot be edited through frequency/until.
        return not self.raw

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RecurrenceRule | None":
        if not data:
            return None
        raw = str(data.get("raw", "") or "").strip()
        frequency_value = data.get("frequency")
        freq_text = str(getattr(frequency_value, "value", frequency_value) or "").strip().upper()
        frequency = Frequency(freq_text) if freq_text else None
        if frequency is None and not raw:
            return None
        return cls(frequency=frequency, until=parse_iso_date(data.get("until")), raw=raw)


@dataclass
class Event(EntityMixin):
    id: str
    title: str
    start: datetime
    description: str = ""
    end: datetime | None = None
    all_day: bool = False
    participant_ids: list[str] = field(default_factory=list)
    recurrence: RecurrenceRule | None = None
    exception_dates: list[date] = field(default_factory=list)
    ical_uid: str = ""
    id_state: IdState = IdState.LOCAL

    def __post_init__(self) -> None:
        if not isinstance(self.start, datetime):
            raise ValueError(f"event {self.id} has no valid start")
        if self.recurrence is None and self.exception_dates:
            raise ValueError(f"event {self.id} has exception dates but no recurrence")

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        recurrence_raw = data.get("recurrence")
        recurrence = (
            recurrence_raw
            if isinstance(recurrence_raw, RecurrenceRule)
            else RecurrenceRule.from_dict(recurrence_raw)
        )
        exception_dates = [parse_iso_date(x) for x in data.get("exception_dates", []) or []]
        return cls(
            id=str(data.get("id", "") or new_local_id()),
            title=str(data.get("title", "") or ""),
            description=str(data.get("description", "") or ""),
            start=parse_iso_datetime(data.get("start")),
            end=parse_iso_datetime(data.get("end")),
            all_day=bool(data.get("all_day", False)),
            participant_ids=_str_list(data.get("participant_ids")),
            recurrence=recurrence,
            exception_dates=sorted(d for d in exception_dates if d is not None),
            ical_uid=str(data.get("ical_uid", "") or ""),
            id_state=_id_state(data.get("id_state")),
        )


@dataclass
class ShoppingLogEntry:
    id: str
    type: ShoppingLogType
    user_id: str
    timestamp: datetime
    details: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShoppingLogEntry":
        return cls(
            id=str(data.get("id", "") or new_local_id()),
            type=ShoppingLogType(str(getattr(data.get("type"), "value", data.get("type")) or "UPDATE").upper()),
            user_id=str(data.get("user_id", "") or ""),
            timestamp=parse_iso_datetime(data.get("timestamp")) or datetime.now(timezone.utc),
            details=str(data.get("details", "") or ""),
        )


@dataclass
class ShoppingItem(EntityMixin):
    id: str
    content: str
    added_by: str
    added_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    note: str = ""
    in_cart: bool = False
    private: bool = False
    user_category_ids: dict[str, str] = field(default_factory=dict)
    creator_category_id: str = ""
    priority: Priority = Priority.NORMAL
    order: int = 0
    seen_by: list[str] = field(default_factory=list)
    logs: list[ShoppingLogEntry] = field(default_factory=list)
    completed_by: str = ""
    completed_at: datetime | None = None
    id_state: IdState = IdState.LOCAL

    def category_for(self, user_id: str) -> str:
        return self.user_category_ids.get(user_id) or self.creator_category_id

    def log(
        self,
        log_type: ShoppingLogType,
        actor: str,
        details: str = "",
        now: datetime | None = None,
    ) -> "ShoppingItem":
        entry = ShoppingLogEntry(
            id=new_local_id(),
            type=log_type,
            user_id=actor,
            timestamp=_ensure_tz(now or datetime.now(timezone.utc)),
            details=details,
        )
        return self.with_updates(logs=[*self.clone().logs, entry])

    def mark_seen_by(self, user_id: str) -> "ShoppingItem":
        if user_id in self.seen_by:
            return self
        return self.with_updates(seen_by=[*self.seen_by, user_id])

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShoppingItem":
        raw_categories = data.get("user_category_ids") or {}
        return cls(
            id=str(data.get("id", "") or new_local_id()),
            content=str(data.get("content", "") or ""),
            added_by=str(data.get("added_by", "") or ""),
            added_at=parse_iso_datetime(data.get("added_at")) or datetime.now(timezone.utc),
            note=str(data.get("note", "") or ""),
            in_cart=bool(data.get("in_cart", False)),
            private=bool(data.get("private", False)),
            user_category_ids={
                str(k): str(v) for k, v in raw_categories.items() if str(k).strip() and str(v).strip()
            },
            creator_category_id=str(data.get("creator_category_id", "") or ""),
            priority=_priority(data.get("priority")),
            order=int(data.get("order", 0) or 0),
            seen_by=_str_list(data.get("seen_by")),
            logs=[
                entry if isinstance(entry, ShoppingLogEntry) else ShoppingLogEntry.from_dict(entry)
                for entry in data.get("logs", []) or []
            ],
            completed_by=str(data.get("completed_by", "") or ""),
            completed_at=parse_iso_datetime(data.get("completed_at")),
            id_state=_id_state(data.get("id_state")),
        )


@dataclass
class TodoItem(EntityMixin):
    id: str
    content: str
    user_id: str
    note: str = ""
    deadline: datetime | None = None
    priority: Priority = Priority.NORMAL
    completed: bool = False
    private: bool = False
    id_state: IdState = IdState.LOCAL

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TodoItem":
        return cls(
            id=str(data.get("id", "") or new_local_id()),
            content=str(data.get("content", "") or ""),
            user_id=str(data.get("user_id", "") or ""),
            note=str(data.get("note", "") or ""),
            deadline=parse_iso_datetime(data.get("deadline")),
            priority=_priority(data.get("priority")),
            completed=bool(data.get("completed", False)),
            private=bool(data.get("private", False)),
            id_state=_id_state(data.get("id_state")),
        )


@dataclass
class UserPreferences:
    theme: str = "LIGHT"
    locale: str = "en"
    time_format: str = "24h"
    show_weather: bool = True
    show_moon_phases: bool = False
    show_holidays: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "UserPreferences":
        data = data or {}
        theme = str(data.get("theme", "LIGHT")).strip().upper()
        if theme not in {"LIGHT", "DARK"}:
            theme = "LIGHT"
        time_format = str(data.get("time_format", "24h")).strip()
        if time_format not in {"12h", "24h"}:
            time_format = "24h"
        return cls(
            theme=theme,
            locale=str(data.get("locale", "en")).strip() or "en",
            time_format=time_format,
            show_weather=bool(data.get("show_weather", True)),
            show_moon_phases=bool(data.get("show_moon_phases", False)),
            show_holidays=bool(data.get("show_holidays", True)),
        )


@dataclass
class User(EntityMixin):
    id: str
    username: str
    color_index: int = 0
    avatar: str = ""
    photo_url: str = ""
    admin: bool = False
    font_scale: float = 1.0
    preferences: UserPreferences = field(default_factory=UserPreferences)
    id_state: IdState = IdState.LOCAL

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        preferences = data.get("preferences")
        return cls(
            id=str(data.get("id", "") or new_local_id()),
            username=str(data.get("username", "") or ""),
            color_index=max(0, min(9, int(data.get("color_index", 0) or 0))),
            avatar=str(data.get("avatar", "") or ""),
            photo_url=str(data.get("photo_url", "") or ""),
            admin=bool(data.get("admin", False)),
            font_scale=float(data.get("font_scale", 1.0) or 1.0),
            preferences=(
                preferences
                if isinstance(preferences, UserPreferences)
                else UserPreferences.from_dict(preferences)
            ),
            id_state=_id_state(data.get("id_state")),
        )


@dataclass
class ShoppingStore(EntityMixin):
    id: str
    name: str
    order: int = 0
    id_state: IdState = IdState.LOCAL

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShoppingStore":
        return cls(
            id=str(data.get("id", "") or new_local_id()),
            name=str(data.get("name", "") or ""),
            order=int(data.get("order", 0) or 0),
            id_state=_id_state(data.get("id_state")),
        )


@dataclass
class ShoppingCategory(EntityMixin):
    id: str
    name: str
    order: int = 0
    store_id: str = ""
    id_state: IdState = IdState.LOCAL

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShoppingCategory":
        return cls(
            id=str(data.get("id", "") or new_local_id()),
            name=str(data.get("name", "") or ""),
            order=int(data.get("order", 0) or 0),
            store_id=str(data.get("store_id", "") or ""),
            id_state=_id_state(data.get("id_state")),
        )


ENTITY_TYPES: dict[str, type] = {
    EVENTS: Event,
    SHOPPING: ShoppingItem,
    TODOS: TodoItem,
    USERS: User,
    STORES: ShoppingStore,
    CATEGORIES: ShoppingCategory,
}


def entity_from_dict(collection: str, data: dict[str, Any]) -> Any:
    try:
        entity_type = ENTITY_TYPES[collection]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection}") from None
    return entity_type.from_dict(data)


@dataclass
class RemoteConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: int = 15

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RemoteConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 15))),
        )


@dataclass
class SyncConfig:
    history_limit: int = 50
    max_attempts: int = 5
    retry_interval_seconds: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            history_limit=max(1, int(data.get("history_limit", 50))),
            max_attempts=max(1, int(data.get("max_attempts", 5))),
            retry_interval_seconds=max(5, int(data.get("retry_interval_seconds", 60))),
        )


@dataclass
class CalendarConfig:
    timezone: str = "UTC"
    default_duration_minutes: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarConfig":
        data = data or {}
        return cls(
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            default_duration_minutes=max(1, int(data.get("default_duration_minutes", 60))),
        )

    def zone(self) -> tzinfo:
        return dateutil_tz.gettz(self.timezone) or timezone.utc

    def default_duration(self) -> timedelta:
        return timedelta(minutes=self.default_duration_minutes)


@dataclass
class SessionConfig:
    user_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SessionConfig":
        data = data or {}
        return cls(user_id=str(data.get("user_id", "")).strip())


@dataclass
class AppConfig:
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            remote=RemoteConfig.from_dict(data.get("remote")),
            sync=SyncConfig.from_dict(data.get("sync")),
            calendar=CalendarConfig.from_dict(data.get("calendar")),
            session=SessionConfig.from_dict(data.get("session")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class ReconcileResult:
    collection: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    remapped: dict[str, str] = field(default_factory=dict)
    duration_ms: int = 0
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> str:
        if self.failed:
            return "partial"
        return "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "status": self.status,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "failed": self.failed,
            "remapped": dict(self.remapped),
            "duration_ms": self.duration_ms,
            "run_at": serialize_datetime(self.run_at),
        }
