from __future__ import annotations

import os
from collections import deque
from typing import Any

import requests
from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

from familysync.config_manager import ConfigManager
from familysync.history import HistoryManager
from familysync.household_store import HouseholdStore
from familysync.ical_codec import InterchangeError, export_for_user, export_events, import_events, merge_imported
from familysync.models import ALL_COLLECTIONS, EVENTS, SHOPPING, AppConfig, entity_from_dict, parse_iso_datetime
from familysync.realtime import RealtimeMergeHandler
from familysync.recurrence import expand_all
from familysync.remote import InMemoryRemoteCollection, RemoteCollection, RemoteError, RestRemoteCollection
from familysync.scheduler import PendingRetryScheduler
from familysync.state_store import StateStore
from familysync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CollectionUpdateRequest(BaseModel):
    items: list[dict[str, Any]] = Field(default_factory=list)
    track_history: bool = True


class ImportRequest(BaseModel):
    text: str = Field(min_length=1)
    participant_ids: list[str] = Field(default_factory=list)


def build_remotes(config: AppConfig) -> dict[str, RemoteCollection]:
    if not config.remote.base_url:
        return {name: InMemoryRemoteCollection(name) for name in ALL_COLLECTIONS}
    session = requests.Session()
    return {
        name: RestRemoteCollection(config.remote, name, session=session)
        for name in ALL_COLLECTIONS
    }


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.state_store = StateStore(state_path)
        self.store = HouseholdStore()
        self.remotes = build_remotes(config)
        self.sync_engine = SyncEngine(self.store, self.remotes, self.state_store, config.sync)
        self.history = HistoryManager(
            self.store,
            self.sync_engine,
            limit=config.sync.history_limit,
            state_store=self.state_store,
        )
        self.notifications: deque[str] = deque(maxlen=50)
        self.realtime = RealtimeMergeHandler(
            self.store,
            config.session.user_id,
            notifier=self.notifications.append,
            state_store=self.state_store,
        )
        self.realtime.attach(self.remotes)
        self.scheduler = PendingRetryScheduler(self.sync_engine, self.config_manager)

    def authenticate(self) -> None:
        config = self.config_manager.load()
        rest_remotes = [r for r in self.remotes.values() if isinstance(r, RestRemoteCollection)]
        if not rest_remotes or not config.remote.username:
            return
        try:
            token = rest_remotes[0].authenticate()
        except RemoteError as exc:
            self.state_store.record_audit_event(
                collection="system",
                entity_id="remote",
                action="auth_failed",
                details={"error": str(exc)},
            )
            return
        for remote in rest_remotes:
            remote.token = token


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_password = str(current.get("remote", {}).get("password", ""))
    remote = sanitized.get("remote")
    if isinstance(remote, dict):
        password = remote.get("password")
        if password is not None and str(password).strip() in {"", "***"}:
            if current_password:
                remote.pop("password", None)
            else:
                remote["password"] = ""
        if not remote:
            sanitized.pop("remote", None)
    return sanitized


def _require_collection(name: str) -> None:
    if name not in ALL_COLLECTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown collection: {name}")


def create_app() -> FastAPI:
    config_path = os.getenv("FAMILYSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("FAMILYSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="FamilySync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.authenticate()
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()
        app.state.context.realtime.detach()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        updated = app.state.context.config_manager.update(_sanitize_config_payload(request.payload, current))
        config = updated.to_dict()
        if config["remote"]["password"]:
            config["remote"]["password"] = "***"
        return {"message": "config updated", "config": config}

    @app.get("/api/collections/{name}")
    def get_collection(name: str) -> dict[str, Any]:
        _require_collection(name)
        items = app.state.context.store.get(name)
        return {"collection": name, "items": [item.to_dict() for item in items]}

    @app.put("/api/collections/{name}")
    def put_collection(name: str, request: CollectionUpdateRequest) -> dict[str, Any]:
        _require_collection(name)
        try:
            items = [entity_from_dict(name, payload) for payload in request.items]
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if name == SHOPPING:
            for item in items:
                app.state.context.store.remember_suggestion(item.content)
        result = app.state.context.history.mutate(name, items, track=request.track_history)
        return {
            "collection": name,
            "result": result.to_dict() if result else None,
            "items": [item.to_dict() for item in app.state.context.store.get(name)],
        }

    @app.get("/api/shopping/suggestions")
    def shopping_suggestions(prefix: str = "", limit: int = 10) -> dict[str, Any]:
        return {"suggestions": app.state.context.store.suggestions(prefix, limit=limit)}

    def _history_state() -> dict[str, Any]:
        history = app.state.context.history
        return {
            "can_undo": history.can_undo,
            "can_redo": history.can_redo,
            "undo_depth": history.undo_depth,
            "redo_depth": history.redo_depth,
        }

    @app.get("/api/history")
    def history_state() -> dict[str, Any]:
        return _history_state()

    @app.post("/api/history/undo")
    def undo() -> dict[str, Any]:
        applied = app.state.context.history.undo()
        return {"applied": applied, **_history_state()}

    @app.post("/api/history/redo")
    def redo() -> dict[str, Any]:
        applied = app.state.context.history.redo()
        return {"applied": applied, **_history_state()}

    @app.get("/api/events/expand")
    def expand_events(start: str, end: str, strict: bool = True) -> dict[str, Any]:
        try:
            range_start = parse_iso_datetime(start)
            range_end = parse_iso_datetime(end)
        except ValueError:
            range_start = range_end = None
        if range_start is None or range_end is None:
            raise HTTPException(status_code=400, detail="Invalid start/end datetime")
        if range_end < range_start:
            raise HTTPException(status_code=400, detail="end must be later than start")
        calendar = app.state.context.config_manager.load().calendar
        instances = expand_all(
            app.state.context.store.get(EVENTS),
            range_start,
            range_end,
            tz=calendar.zone(),
            strict=strict,
            default_duration=calendar.default_duration(),
        )
        return {"instances": [instance.to_dict() for instance in instances]}

    @app.get("/api/events/export.ics")
    def export_ics(user_id: str = "") -> Response:
        calendar = app.state.context.config_manager.load().calendar
        events = app.state.context.store.get(EVENTS)
        warnings: list[str] = []
        if user_id:
            text = export_for_user(events, user_id, tz=calendar.zone(), warnings=warnings)
        else:
            text = export_events(events, tz=calendar.zone(), warnings=warnings)
        for warning in warnings:
            app.state.context.state_store.record_audit_event(
                collection=EVENTS,
                entity_id=warning.split(":", 1)[0],
                action="export_rule_dropped",
                details={"reason": warning},
            )
        return Response(
            content=text,
            media_type="text/calendar",
            headers={"Content-Disposition": 'attachment; filename="familysync.ics"'},
        )

    @app.post("/api/events/import")
    def import_ics(request: ImportRequest) -> dict[str, Any]:
        context = app.state.context
        calendar = context.config_manager.load().calendar
        try:
            imported = import_events(
                request.text,
                tz=calendar.zone(),
                participant_ids=request.participant_ids,
                default_duration=calendar.default_duration(),
            )
        except InterchangeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        for reason in imported.skipped:
            context.state_store.record_audit_event(
                collection=EVENTS,
                entity_id=reason.split(":", 1)[0],
                action="import_skipped",
                details={"reason": reason},
            )
        with context.store.lock:
            existing = context.store.get(EVENTS)
            fresh = merge_imported(existing, imported.events)
            result = context.history.mutate(EVENTS, [*existing, *fresh]) if fresh else None
        return {
            "imported": len(fresh),
            "duplicates": len(imported.events) - len(fresh),
            "skipped": imported.skipped,
            "result": result.to_dict() if result else None,
        }

    @app.post("/api/sync/retry")
    def retry_pending() -> dict[str, Any]:
        return {"summary": app.state.context.sync_engine.flush_pending()}

    @app.get("/api/sync/pending")
    def pending_operations() -> dict[str, Any]:
        return {"pending": app.state.context.state_store.pending_operations()}

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_reconcile_runs(limit=limit)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, action: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, action=action)}

    @app.get("/api/notifications")
    def notifications() -> dict[str, Any]:
        pending = list(app.state.context.notifications)
        app.state.context.notifications.clear()
        return {"notifications": pending}

    return app
