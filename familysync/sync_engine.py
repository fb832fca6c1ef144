from __future__ import annotations

import traceback
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

from familysync.household_store import HouseholdStore
from familysync.models import ReconcileResult, SyncConfig, entity_from_dict
from familysync.reconciler import diff
from familysync.remote import RemoteCollection, to_record
from familysync.state_store import StateStore


IdRemapCallback = Callable[[str, str], None]


def _error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncEngine:
    def __init__(
        self,
        store: HouseholdStore,
        remotes: Mapping[str, RemoteCollection],
        state_store: StateStore,
        config: SyncConfig | None = None,
    ) -> None:
        self.store = store
        self.remotes = dict(remotes)
        self.state_store = state_store
        self.config = config or SyncConfig()

    def _remote_for(self, collection: str) -> RemoteCollection:
        try:
            return self.remotes[collection]
        except KeyError:
            raise KeyError(f"No remote collection configured for {collection}") from None

    def _default_remap(self, collection: str) -> IdRemapCallback:
        def on_id_remap(old_id: str, new_id: str) -> None:
            self.store.remap_id(collection, old_id, new_id)

        return on_id_remap

    def _record_failure(self, collection: str, entity_id: str, operation: str, payload: dict[str, Any], exc: Exception) -> None:
        error = _error_text(exc)
        self.state_store.enqueue_pending(
            collection=collection,
            entity_id=entity_id,
            operation=operation,
            payload=payload,
            error=error,
        )
        self.state_store.record_audit_event(
            collection=collection,
            entity_id=entity_id,
            action=f"{operation}_failed",
            details={"error": error, "traceback": traceback.format_exc(limit=5)},
        )

    def _remote_create(self, collection: str, entity: Any, remote: RemoteCollection) -> Any:
        # The remote store may notify about this record before create returns.
        record = to_record(collection, entity)
        self.store.expect_echo(collection, record)
        try:
            return remote.create(entity)
        finally:
            self.store.forget_echo(collection, record)

    def _create(
        self,
        collection: str,
        entity: Any,
        remote: RemoteCollection,
        on_id_remap: IdRemapCallback,
        result: ReconcileResult,
    ) -> None:
        created = self._remote_create(collection, entity, remote)
        self.state_store.drop_pending(collection, entity.id)
        result.created += 1
        if created.id == entity.id and entity.persisted:
            return
        on_id_remap(entity.id, created.id)
        if created.id != entity.id:
            result.remapped[entity.id] = created.id
            self.state_store.record_audit_event(
                collection=collection,
                entity_id=created.id,
                action="remap",
                details={"provisional_id": entity.id, "persisted_id": created.id},
            )

    def reconcile(
        self,
        collection: str,
        prior: Sequence[Any],
        next_items: Sequence[Any],
        remote: RemoteCollection | None = None,
        on_id_remap: IdRemapCallback | None = None,
    ) -> ReconcileResult:
        """Push the difference between two snapshots of one collection to the remote store.

        Deletes are issued first, then creates and updates in the order of
        ``next_items``, strictly one call at a time. A failed call is queued for
        retry and written to the audit trail; it never aborts the batch and the
        local optimistic state is left untouched.
        """
        started_at = datetime.now(timezone.utc)
        remote = remote or self._remote_for(collection)
        on_id_remap = on_id_remap or self._default_remap(collection)
        result = ReconcileResult(collection=collection, run_at=started_at)
        changes = diff(prior, next_items)

        for entity in changes.deleted:
            if not entity.persisted:
                # Never reached the remote store; only a queued create can exist.
                self.state_store.drop_pending(collection, entity.id)
                result.deleted += 1
                continue
            try:
                remote.delete(entity.id)
            except Exception as exc:
                result.failed += 1
                self._record_failure(collection, entity.id, "delete", entity.to_dict(), exc)
                continue
            self.state_store.drop_pending(collection, entity.id)
            result.deleted += 1

        created_ids = {entity.id for entity in changes.created}
        updated_ids = {entity.id for entity in changes.updated}
        for entity in next_items:
            is_created = entity.id in created_ids
            if not is_created and entity.id not in updated_ids:
                continue
            try:
                if is_created or not entity.persisted:
                    self._create(collection, entity, remote, on_id_remap, result)
                else:
                    remote.update(entity)
                    self.state_store.drop_pending(collection, entity.id)
                    result.updated += 1
            except Exception as exc:
                result.failed += 1
                operation = "create" if (is_created or not entity.persisted) else "update"
                self._record_failure(collection, entity.id, operation, entity.to_dict(), exc)

        result.duration_ms = _elapsed_ms(started_at)
        self.state_store.record_reconcile_run(result)
        return result

    def apply_collection(self, collection: str, items: Iterable[Any]) -> ReconcileResult | None:
        """Replace a collection optimistically, then reconcile it with the remote store.

        Returns ``None`` when ``items`` equals the current contents.
        """
        next_items = list(items)
        with self.store.lock:
            prior = self.store.get(collection)
            if prior == next_items:
                return None
            self.store.replace(collection, next_items)
            return self.reconcile(collection, prior, next_items)

    def _replay(self, entry: dict[str, Any]) -> None:
        collection = str(entry["collection"])
        entity_id = str(entry["entity_id"])
        remote = self._remote_for(collection)
        live = self.store.find(collection, entity_id)

        if entry["operation"] == "delete":
            if live is None:
                remote.delete(entity_id)
            return

        entity = live if live is not None else entity_from_dict(collection, entry["payload"])
        if entry["operation"] == "update" and entity.persisted:
            remote.update(entity)
            return
        created = self._remote_create(collection, entity, remote)
        if live is not None and (created.id != entity.id or not entity.persisted):
            self.store.remap_id(collection, entity.id, created.id)

    def flush_pending(self) -> dict[str, int]:
        """Retry queued remote operations, oldest first.

        The live entity from the store is sent when it still exists, the queued
        payload otherwise. An entry is dropped after ``max_attempts`` failures.
        """
        summary = {"retried": 0, "succeeded": 0, "failed": 0, "dropped": 0}
        with self.store.lock:
            for entry in self.state_store.pending_operations():
                collection = str(entry["collection"])
                entity_id = str(entry["entity_id"])
                summary["retried"] += 1
                try:
                    self._replay(entry)
                except Exception as exc:
                    error = _error_text(exc)
                    attempts = self.state_store.bump_pending(int(entry["id"]), error)
                    if attempts < self.config.max_attempts:
                        summary["failed"] += 1
                        continue
                    self.state_store.drop_pending(collection, entity_id)
                    self.state_store.record_audit_event(
                        collection=collection,
                        entity_id=entity_id,
                        action="pending_dropped",
                        details={"operation": entry["operation"], "attempts": attempts, "error": error},
                    )
                    summary["dropped"] += 1
                    continue
                self.state_store.drop_pending(collection, entity_id)
                self.state_store.record_audit_event(
                    collection=collection,
                    entity_id=entity_id,
                    action="pending_retry_ok",
                    details={"operation": entry["operation"], "attempts": int(entry["attempts"]) + 1},
                )
                summary["succeeded"] += 1
        return summary
