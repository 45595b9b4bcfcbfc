"""Data access for the verification pipeline.

The pipeline talks to storage only through the protocols below, so the
relational backend of a deployment can be swapped in without touching the
pipeline.  ``InMemoryStore`` implements every protocol; ``JsonFileStore``
adds atomic whole-store JSON snapshots on every write.  A write whose
snapshot fails is undone in memory before the ``PersistenceError``
propagates, so memory never holds state the disk does not.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Protocol

from lto_verify.config import CLEARANCE_TERMINAL_STATUSES, STORE_DIR
from lto_verify.errors import PersistenceError
from lto_verify.pipeline.models import (
    ClearanceRequest,
    DocumentRecord,
    HistoryEntry,
    Notification,
    User,
    Vehicle,
    VerificationRecord,
)

logger = logging.getLogger(__name__)

# Statuses that close a clearance request and stamp completed_at
COMPLETING_STATUSES = ("APPROVED", "REJECTED", "COMPLETED")


# ═══════════════════════════════════════════════════
# PROTOCOLS
# ═══════════════════════════════════════════════════

class DocumentStore(Protocol):
    async def get_documents_by_vehicle(self, vehicle_id: str) -> list[DocumentRecord]: ...

    async def get_documents_in_window(self, start: datetime, end: datetime) -> list[DocumentRecord]: ...

    async def get_document(self, document_id: str) -> DocumentRecord | None: ...


class VehicleStore(Protocol):
    async def get_vehicle(self, vehicle_id: str) -> Vehicle | None: ...

    async def update_vehicle(self, vehicle_id: str, **changes) -> Vehicle: ...


class VerificationStore(Protocol):
    async def update_verification_status(
        self,
        vehicle_id: str,
        category: str,
        status: str,
        verified_by: str | None,
        note: str,
        metadata: dict | None = None,
    ) -> VerificationRecord: ...

    async def get_verification(self, vehicle_id: str, category: str) -> VerificationRecord | None: ...

    async def find_verification_by_file_hash(
        self, file_hash: str, exclude_vehicle_id: str | None = None
    ) -> VerificationRecord | None: ...


class ClearanceRequestStore(Protocol):
    async def create_clearance_request_if_absent(
        self, request: ClearanceRequest
    ) -> tuple[ClearanceRequest, bool]: ...

    async def get_clearance_requests_by_vehicle(self, vehicle_id: str) -> list[ClearanceRequest]: ...

    async def update_clearance_request_status(
        self,
        request_id: str,
        status: str,
        metadata: dict | None = None,
        notes: str | None = None,
    ) -> ClearanceRequest: ...


class Directory(Protocol):
    async def find_active_user(self, role: str) -> User | None: ...


class Notifier(Protocol):
    async def create_notification(
        self, user_id: str, title: str, message: str, type: str = "info"
    ) -> Notification: ...


class AuditLog(Protocol):
    async def add_vehicle_history(
        self,
        vehicle_id: str,
        action: str,
        description: str,
        performed_by: str | None = "system",
        metadata: dict | None = None,
    ) -> HistoryEntry: ...


class PipelineStore(
    DocumentStore,
    VehicleStore,
    VerificationStore,
    ClearanceRequestStore,
    Directory,
    Notifier,
    AuditLog,
    Protocol,
):
    """Everything the clearance orchestrator needs from one backend."""


# ═══════════════════════════════════════════════════
# IN-MEMORY STORE
# ═══════════════════════════════════════════════════

class InMemoryStore:
    """Dict-backed implementation of every store protocol."""

    def __init__(self):
        self.documents: dict[str, DocumentRecord] = {}
        self.vehicles: dict[str, Vehicle] = {}
        self.verifications: dict[tuple[str, str], VerificationRecord] = {}
        self.clearance_requests: dict[str, ClearanceRequest] = {}
        self.users: dict[str, User] = {}
        self.notifications: list[Notification] = []
        self.history: list[HistoryEntry] = []
        self._clearance_lock = asyncio.Lock()

    async def _changed(self, undo: Callable[[], None]) -> None:
        """Hook run after every write; ``undo`` reverts that write in memory."""

    @staticmethod
    def _undo_put(table: dict, key) -> Callable[[], None]:
        """Undo for ``table[key] = ...``: restore the previous value or drop the key."""
        had, previous = key in table, table.get(key)

        def undo():
            if had:
                table[key] = previous
            else:
                table.pop(key, None)
        return undo

    @staticmethod
    def _undo_edit(record) -> Callable[[], None]:
        """Undo for in-place field edits on a dataclass record."""
        snapshot = copy.deepcopy(vars(record))
        return lambda: vars(record).update(snapshot)

    # ── Documents ──

    async def add_document(self, document: DocumentRecord) -> DocumentRecord:
        undo = self._undo_put(self.documents, document.id)
        self.documents[document.id] = document
        await self._changed(undo)
        return document

    async def get_document(self, document_id: str) -> DocumentRecord | None:
        return self.documents.get(document_id)

    async def get_documents_by_vehicle(self, vehicle_id: str) -> list[DocumentRecord]:
        return sorted(
            (d for d in self.documents.values() if d.vehicle_id == vehicle_id),
            key=lambda d: d.uploaded_at,
        )

    async def get_documents_in_window(self, start: datetime, end: datetime) -> list[DocumentRecord]:
        return sorted(
            (d for d in self.documents.values() if start <= d.uploaded_at <= end),
            key=lambda d: d.uploaded_at,
        )

    # ── Vehicles ──

    async def add_vehicle(self, vehicle: Vehicle) -> Vehicle:
        undo = self._undo_put(self.vehicles, vehicle.id)
        self.vehicles[vehicle.id] = vehicle
        await self._changed(undo)
        return vehicle

    async def get_vehicle(self, vehicle_id: str) -> Vehicle | None:
        return self.vehicles.get(vehicle_id)

    async def update_vehicle(self, vehicle_id: str, **changes) -> Vehicle:
        vehicle = self.vehicles.get(vehicle_id)
        if vehicle is None:
            raise KeyError(f"Vehicle {vehicle_id} not found")
        for key in changes:
            if key not in Vehicle.__dataclass_fields__:
                raise AttributeError(f"Vehicle has no field '{key}'")
        undo = self._undo_edit(vehicle)
        for key, value in changes.items():
            setattr(vehicle, key, value)
        await self._changed(undo)
        return vehicle

    # ── Verifications ──

    async def update_verification_status(
        self,
        vehicle_id: str,
        category: str,
        status: str,
        verified_by: str | None,
        note: str,
        metadata: dict | None = None,
    ) -> VerificationRecord:
        now = datetime.now()
        key = (vehicle_id, category)
        record = self.verifications.get(key)
        if record is None:
            undo = self._undo_put(self.verifications, key)
            record = VerificationRecord(vehicle_id=vehicle_id, category=category, status=status)
            self.verifications[key] = record
        else:
            undo = self._undo_edit(record)
        record.status = status
        record.verified_by = verified_by
        record.note = note
        record.metadata = dict(metadata or {})
        record.updated_at = now
        record.history.append({
            "status": status,
            "verified_by": verified_by,
            "note": note,
            "at": now.isoformat(),
        })
        await self._changed(undo)
        return record

    async def get_verification(self, vehicle_id: str, category: str) -> VerificationRecord | None:
        return self.verifications.get((vehicle_id, category))

    async def find_verification_by_file_hash(
        self, file_hash: str, exclude_vehicle_id: str | None = None
    ) -> VerificationRecord | None:
        """Most recent verification whose document hashed to ``file_hash``."""
        if not file_hash:
            return None
        matches = [
            r for r in self.verifications.values()
            if r.metadata.get("fileHash") == file_hash and r.vehicle_id != exclude_vehicle_id
        ]
        return max(matches, key=lambda r: r.updated_at, default=None)

    # ── Clearance requests ──

    async def create_clearance_request_if_absent(
        self, request: ClearanceRequest
    ) -> tuple[ClearanceRequest, bool]:
        """Insert ``request`` unless an open request of the same type exists.

        Returns ``(request, True)`` when inserted, else ``(existing, False)``.
        """
        async with self._clearance_lock:
            for existing in self.clearance_requests.values():
                if (existing.vehicle_id == request.vehicle_id
                        and existing.request_type == request.request_type
                        and existing.status not in CLEARANCE_TERMINAL_STATUSES):
                    return existing, False
            undo = self._undo_put(self.clearance_requests, request.id)
            self.clearance_requests[request.id] = request
            await self._changed(undo)
            return request, True

    async def get_clearance_requests_by_vehicle(self, vehicle_id: str) -> list[ClearanceRequest]:
        return sorted(
            (r for r in self.clearance_requests.values() if r.vehicle_id == vehicle_id),
            key=lambda r: r.created_at,
        )

    async def update_clearance_request_status(
        self,
        request_id: str,
        status: str,
        metadata: dict | None = None,
        notes: str | None = None,
    ) -> ClearanceRequest:
        request = self.clearance_requests.get(request_id)
        if request is None:
            raise KeyError(f"Clearance request {request_id} not found")
        now = datetime.now()
        undo = self._undo_edit(request)
        request.status = status
        request.updated_at = now
        if metadata:
            request.metadata = {**request.metadata, **metadata}
        if notes is not None:
            request.notes = notes
        if status in COMPLETING_STATUSES:
            request.completed_at = now
        await self._changed(undo)
        return request

    # ── Users, notifications, history ──

    async def add_user(self, user: User) -> User:
        undo = self._undo_put(self.users, user.id)
        self.users[user.id] = user
        await self._changed(undo)
        return user

    async def find_active_user(self, role: str) -> User | None:
        for user in self.users.values():
            if user.role == role and user.active:
                return user
        return None

    async def create_notification(
        self, user_id: str, title: str, message: str, type: str = "info"
    ) -> Notification:
        notification = Notification(user_id=user_id, title=title, message=message, type=type)
        self.notifications.append(notification)
        await self._changed(lambda: self.notifications.remove(notification))
        return notification

    async def add_vehicle_history(
        self,
        vehicle_id: str,
        action: str,
        description: str,
        performed_by: str | None = "system",
        metadata: dict | None = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            vehicle_id=vehicle_id,
            action=action,
            description=description,
            performed_by=performed_by,
            metadata=dict(metadata or {}),
        )
        self.history.append(entry)
        await self._changed(lambda: self.history.remove(entry))
        return entry

    # ── Snapshot ──

    def to_dict(self) -> dict:
        return {
            "documents": [d.to_dict() for d in self.documents.values()],
            "vehicles": [v.to_dict() for v in self.vehicles.values()],
            "verifications": [v.to_dict() for v in self.verifications.values()],
            "clearance_requests": [r.to_dict() for r in self.clearance_requests.values()],
            "users": [u.to_dict() for u in self.users.values()],
            "notifications": [n.to_dict() for n in self.notifications],
            "history": [h.to_dict() for h in self.history],
        }

    def _restore(self, data: dict) -> None:
        for item in data.get("documents", []):
            doc = DocumentRecord.from_dict(item)
            self.documents[doc.id] = doc
        for item in data.get("vehicles", []):
            vehicle = Vehicle.from_dict(item)
            self.vehicles[vehicle.id] = vehicle
        for item in data.get("verifications", []):
            record = VerificationRecord.from_dict(item)
            self.verifications[(record.vehicle_id, record.category)] = record
        for item in data.get("clearance_requests", []):
            request = ClearanceRequest.from_dict(item)
            self.clearance_requests[request.id] = request
        for item in data.get("users", []):
            user = User.from_dict(item)
            self.users[user.id] = user
        self.notifications = [Notification.from_dict(n) for n in data.get("notifications", [])]
        self.history = [HistoryEntry.from_dict(h) for h in data.get("history", [])]


# ═══════════════════════════════════════════════════
# JSON FILE STORE
# ═══════════════════════════════════════════════════

class JsonFileStore(InMemoryStore):
    """In-memory store snapshotted to one JSON file after every write.

    ``path`` defaults to ``store.json`` under the configured store directory.
    """

    def __init__(self, path: str | Path | None = None):
        super().__init__()
        self.path = Path(path) if path is not None else STORE_DIR / "store.json"

    async def _changed(self, undo: Callable[[], None]) -> None:
        try:
            self.save()
        except PersistenceError:
            undo()
            logger.error(f"Store snapshot failed, write rolled back in memory: {self.path}")
            raise

    def save(self) -> None:
        """Persist the store to disk as JSON (atomic write).

        Writes to a temporary file in the target directory, then replaces
        the target via os.replace(), so readers never see a half-written
        snapshot.
        """
        data = json.dumps(self.to_dict(), indent=2, default=str, ensure_ascii=False)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp", prefix="store_")
        except OSError as e:
            raise PersistenceError(f"Cannot write store snapshot to {self.path}: {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(data)
            os.replace(tmp_path, str(self.path))
        except BaseException as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            if isinstance(e, OSError):
                raise PersistenceError(f"Cannot write store snapshot to {self.path}: {e}") from e
            raise

    @classmethod
    def load(cls, path: str | Path | None = None) -> "JsonFileStore":
        """Open the store at ``path``; a missing file yields an empty store."""
        store = cls(path)
        if store.path.exists():
            try:
                data = json.loads(store.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                raise PersistenceError(f"Cannot read store snapshot {store.path}: {e}") from e
            store._restore(data)
            logger.info(
                f"Loaded store from {store.path}: {len(store.vehicles)} vehicle(s), "
                f"{len(store.documents)} document(s), {len(store.clearance_requests)} request(s)"
            )
        return store
