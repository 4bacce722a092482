"""Tests for WorkerStateStore — marker files, selection order, exclusivity."""

from __future__ import annotations

import asyncio

import pytest

from flotilla.errors import WorkerBusyError
from flotilla.models import ItemRef, WorkerStatus
from flotilla.worker_state import WorkerStateStore


@pytest.fixture
def store(tmp_path):
    return WorkerStateStore(tmp_path / "tmp" / "worker-status", 3)


def _item(number: int = 42, title: str = "Fix bug") -> ItemRef:
    return ItemRef(number=number, title=title)


class TestSelection:
    async def test_all_free_picks_lowest(self, store):
        assert await store.find_free() == 1

    async def test_skips_busy_slots(self, store):
        await store.mark_busy(1, _item())
        assert await store.find_free() == 2

    async def test_lowest_gap_wins(self, store):
        await store.mark_busy(1, _item(1))
        await store.mark_busy(3, _item(3))
        assert await store.find_free() == 2

    async def test_full_pool(self, store):
        for worker_id in (1, 2, 3):
            await store.mark_busy(worker_id, _item(worker_id))
        assert await store.find_free() is None

    async def test_missing_directory_means_all_free(self, tmp_path):
        store = WorkerStateStore(tmp_path / "does-not-exist", 2)
        assert await store.find_free() == 1


class TestMarkers:
    async def test_busy_marker_payload(self, store):
        await store.mark_busy(1, _item())
        assert store.busy_path(1).read_text() == "Issue #42: Fix bug"
        assert not store.setup_path(1).exists()

    async def test_setup_marker(self, store):
        await store.mark_busy(2, _item())
        await store.mark_setup_confirmed(2)
        assert store.setup_path(2).read_text() == "Setup confirmed for Issue #42: Fix bug"

    async def test_get_reads_slot(self, store):
        await store.mark_busy(2, _item(7, "Add docs"))
        await store.mark_setup_confirmed(2)

        slot = await store.get(2)

        assert slot.status == WorkerStatus.BUSY
        assert slot.assigned_item == ItemRef(number=7, title="Add docs")
        assert slot.setup_confirmed is True

    async def test_unparseable_payload_kept_raw(self, store):
        store.status_dir.mkdir(parents=True)
        store.busy_path(1).write_text("something odd")

        slot = await store.get(1)

        assert slot.status == WorkerStatus.BUSY
        assert slot.assigned_item is None
        assert slot.raw_payload == "something odd"

    async def test_snapshot_covers_pool(self, store):
        await store.mark_busy(3, _item())
        slots = await store.snapshot()
        assert [s.worker_id for s in slots] == [1, 2, 3]
        assert [s.is_free for s in slots] == [True, True, False]

    async def test_find_by_item(self, store):
        await store.mark_busy(2, _item(99))
        assert await store.find_by_item(99) == 2
        assert await store.find_by_item(100) is None


class TestExclusivity:
    async def test_second_mark_busy_rejected(self, store):
        await store.mark_busy(1, _item(1))
        with pytest.raises(WorkerBusyError) as exc_info:
            await store.mark_busy(1, _item(2))
        assert exc_info.value.worker_id == 1
        # First writer's payload survives
        assert store.busy_path(1).read_text() == "Issue #1: Fix bug"

    async def test_concurrent_marks_have_one_winner(self, store):
        results = await asyncio.gather(
            *(store.mark_busy(1, _item(n)) for n in range(5)), return_exceptions=True
        )
        assert sum(1 for r in results if r is None) == 1
        assert sum(1 for r in results if isinstance(r, WorkerBusyError)) == 4

    async def test_separate_stores_share_markers(self, tmp_path):
        a = WorkerStateStore(tmp_path, 2)
        b = WorkerStateStore(tmp_path, 2)
        await a.mark_busy(1, _item())
        with pytest.raises(WorkerBusyError):
            await b.mark_busy(1, _item())
        assert await b.find_free() == 2


class TestRelease:
    async def test_release_clears_both(self, store):
        await store.mark_busy(1, _item())
        await store.mark_setup_confirmed(1)

        await store.release(1)

        assert not store.busy_path(1).exists()
        assert not store.setup_path(1).exists()
        assert (await store.get(1)).is_free

    async def test_release_is_idempotent(self, store):
        await store.release(2)
        await store.release(2)
        assert await store.find_free() == 1

    async def test_reset_all_includes_slots_above_pool(self, store):
        await store.mark_busy(1, _item())
        await store.mark_setup_confirmed(1)
        (store.status_dir / "worker8_busy.txt").write_text("Issue #8: stale")
        (store.status_dir / "notes.txt").write_text("keep me")

        removed = await store.reset_all()

        assert removed == 3
        assert (store.status_dir / "notes.txt").exists()
        assert all(s.is_free for s in await store.snapshot())

    async def test_reset_all_without_directory(self, tmp_path):
        store = WorkerStateStore(tmp_path / "missing", 1)
        assert await store.reset_all() == 0


class TestValidation:
    def test_pool_size_must_be_positive(self, tmp_path):
        with pytest.raises(ValueError):
            WorkerStateStore(tmp_path, 0)

    @pytest.mark.parametrize("worker_id", [0, 4, -1])
    async def test_out_of_range_ids(self, store, worker_id):
        with pytest.raises(ValueError):
            await store.mark_busy(worker_id, _item())
        with pytest.raises(ValueError):
            await store.release(worker_id)
