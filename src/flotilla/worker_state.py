"""Worker State Store — marker-file backed slot table.

For every slot N of the pool the marker directory may hold:

    worker<N>_busy.txt           "Issue #42: Fix bug"
    worker<N>_setup_success.txt  "Setup confirmed for Issue #42: Fix bug"

File presence is the state; the content is a human-readable payload. The
files survive dispatcher restarts and are the only durable record of
in-flight assignments. Busy markers are created exclusively (O_EXCL), so the
marker write is the synchronization point between concurrent dispatchers:
the first writer wins.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path

from flotilla.errors import WorkerBusyError
from flotilla.models import ItemRef, WorkerSlot, WorkerStatus

logger = logging.getLogger(__name__)

_MARKER_RE = re.compile(r"^worker(\d+)_(busy|setup_success)\.txt$")


class WorkerStateStore:
    """Tracks free/busy/setup-confirmed state for slots 1..worker_count."""

    def __init__(self, status_dir: Path, worker_count: int):
        if worker_count < 1:
            raise ValueError(f"worker_count must be positive, got {worker_count}")
        self.status_dir = status_dir
        self.worker_count = worker_count
        self._lock = asyncio.Lock()

    # ── Marker paths ─────────────────────────────────────────────────────

    def busy_path(self, worker_id: int) -> Path:
        return self.status_dir / f"worker{worker_id}_busy.txt"

    def setup_path(self, worker_id: int) -> Path:
        return self.status_dir / f"worker{worker_id}_setup_success.txt"

    def _check(self, worker_id: int) -> None:
        if not 1 <= worker_id <= self.worker_count:
            raise ValueError(f"worker id {worker_id} outside pool 1..{self.worker_count}")

    # ── Queries ──────────────────────────────────────────────────────────

    async def find_free(self) -> int | None:
        """Lowest-numbered slot without a busy marker, or None when the pool is full."""
        async with self._lock:
            for worker_id in range(1, self.worker_count + 1):
                if not self.busy_path(worker_id).exists():
                    return worker_id
            return None

    async def get(self, worker_id: int) -> WorkerSlot:
        self._check(worker_id)
        async with self._lock:
            return self._read_slot(worker_id)

    async def snapshot(self) -> list[WorkerSlot]:
        async with self._lock:
            return [self._read_slot(w) for w in range(1, self.worker_count + 1)]

    async def find_by_item(self, item_number: int) -> int | None:
        """Slot currently holding an item, if any."""
        for slot in await self.snapshot():
            if slot.assigned_item and slot.assigned_item.number == item_number:
                return slot.worker_id
        return None

    # ── Mutations ────────────────────────────────────────────────────────

    async def mark_busy(self, worker_id: int, item: ItemRef) -> None:
        """Write the busy marker.

        Raises:
            WorkerBusyError: If the slot already has a busy marker.
        """
        self._check(worker_id)
        async with self._lock:
            self.status_dir.mkdir(parents=True, exist_ok=True)
            try:
                fd = os.open(self.busy_path(worker_id), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                raise WorkerBusyError(worker_id) from None
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(item.payload())
            logger.info("Worker %d marked busy: %s", worker_id, item.payload())

    async def mark_setup_confirmed(self, worker_id: int) -> None:
        self._check(worker_id)
        async with self._lock:
            busy = self.busy_path(worker_id)
            if not busy.exists():
                logger.warning("Setup confirmed for worker %d without a busy marker", worker_id)
                payload = "Setup confirmed"
            else:
                payload = f"Setup confirmed for {busy.read_text(encoding='utf-8').strip()}"
            self.status_dir.mkdir(parents=True, exist_ok=True)
            self.setup_path(worker_id).write_text(payload, encoding="utf-8")
            logger.info("Worker %d setup confirmed", worker_id)

    async def release(self, worker_id: int) -> None:
        """Delete both markers (idempotent)."""
        self._check(worker_id)
        async with self._lock:
            self._unlink(worker_id)
        logger.info("Worker %d released", worker_id)

    async def reset_all(self) -> int:
        """Remove every marker in the directory, including slots above the pool size.

        Returns the number of files deleted.
        """
        removed = 0
        async with self._lock:
            if not self.status_dir.exists():
                return 0
            for path in self.status_dir.iterdir():
                if _MARKER_RE.match(path.name):
                    path.unlink(missing_ok=True)
                    removed += 1
        if removed:
            logger.info("Cleared %d worker status marker(s)", removed)
        return removed

    # ── Private helpers ──────────────────────────────────────────────────

    def _unlink(self, worker_id: int) -> None:
        self.busy_path(worker_id).unlink(missing_ok=True)
        self.setup_path(worker_id).unlink(missing_ok=True)

    def _read_slot(self, worker_id: int) -> WorkerSlot:
        busy = self.busy_path(worker_id)
        try:
            payload = busy.read_text(encoding="utf-8")
        except FileNotFoundError:
            return WorkerSlot(worker_id=worker_id)

        item = ItemRef.from_payload(payload)
        return WorkerSlot(
            worker_id=worker_id,
            status=WorkerStatus.BUSY,
            assigned_item=item,
            setup_confirmed=self.setup_path(worker_id).exists(),
            raw_payload=None if item else payload,
        )
