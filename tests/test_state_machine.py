"""Tests for stage transitions and conditional store updates."""

import asyncio

import pytest

from subscan.db.states import ScanStage, TaskStatus, is_allowed_transition
from subscan.db.store import InvalidTransitionError, ScanStore


@pytest.mark.parametrize(
    "current,new,allowed",
    [
        (ScanStage.PENDING, ScanStage.IN_PROGRESS, True),
        (ScanStage.IN_PROGRESS, ScanStage.READY_FOR_ANALYSIS, True),
        (ScanStage.PENDING, ScanStage.READY_FOR_ANALYSIS, True),
        (ScanStage.READY_FOR_ANALYSIS, ScanStage.ANALYZING, True),
        (ScanStage.ANALYZING, ScanStage.COMPLETED, True),
        (ScanStage.ANALYZING, ScanStage.ANALYZING, True),
        (ScanStage.IN_PROGRESS, ScanStage.FAILED, True),
        (ScanStage.ANALYZING, ScanStage.READY_FOR_ANALYSIS, False),
        (ScanStage.IN_PROGRESS, ScanStage.PENDING, False),
        (ScanStage.PENDING, ScanStage.PENDING, False),
        (ScanStage.IN_PROGRESS, ScanStage.COMPLETED, False),
        (ScanStage.COMPLETED, ScanStage.FAILED, False),
        (ScanStage.FAILED, ScanStage.PENDING, False),
    ],
)
def test_allowed_transitions(current, new, allowed):
    assert is_allowed_transition(current, new) is allowed


def test_only_completed_and_failed_are_terminal():
    assert {stage for stage in ScanStage if stage.is_terminal} == {
        ScanStage.COMPLETED,
        ScanStage.FAILED,
    }


@pytest.mark.asyncio
async def test_transition_applies_only_from_expected_stage(session_factory, make_scan):
    await make_scan(stage=ScanStage.PENDING)

    async with session_factory() as db:
        store = ScanStore(db)
        assert await store.transition("scan_test_1", ScanStage.PENDING, ScanStage.IN_PROGRESS, progress=15)
        # A second writer that also observed "pending" loses
        assert not await store.transition("scan_test_1", ScanStage.PENDING, ScanStage.IN_PROGRESS, progress=15)

        job = await store.get_job("scan_test_1")
        assert job.stage == ScanStage.IN_PROGRESS.value
        assert job.progress == 15


@pytest.mark.asyncio
async def test_regressing_transition_is_rejected(session_factory, make_scan):
    await make_scan(stage=ScanStage.ANALYZING)

    async with session_factory() as db:
        store = ScanStore(db)
        with pytest.raises(InvalidTransitionError):
            await store.transition("scan_test_1", ScanStage.ANALYZING, ScanStage.READY_FOR_ANALYSIS)

        job = await store.get_job("scan_test_1")
        assert job.stage == ScanStage.ANALYZING.value


@pytest.mark.asyncio
async def test_racing_claims_produce_one_winner(session_factory, make_scan):
    await make_scan(stage=ScanStage.READY_FOR_ANALYSIS)

    async def claim():
        async with session_factory() as db:
            return await ScanStore(db).transition(
                "scan_test_1", ScanStage.READY_FOR_ANALYSIS, ScanStage.ANALYZING
            )

    results = await asyncio.gather(claim(), claim(), claim())
    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_terminal_transition_sets_completed_at(session_factory, make_scan):
    await make_scan(stage=ScanStage.IN_PROGRESS)

    async with session_factory() as db:
        store = ScanStore(db)
        assert await store.fail("scan_test_1", ScanStage.IN_PROGRESS, "x" * 800)
        job = await store.get_job("scan_test_1")
        assert job.stage == ScanStage.FAILED.value
        assert job.completed_at is not None
        assert len(job.error_message) == 500


@pytest.mark.asyncio
async def test_progress_never_moves_backwards(session_factory, make_scan):
    await make_scan(stage=ScanStage.IN_PROGRESS, progress=40)

    async with session_factory() as db:
        store = ScanStore(db)
        assert not await store.update_progress("scan_test_1", ScanStage.IN_PROGRESS, 20)
        assert await store.update_progress("scan_test_1", ScanStage.IN_PROGRESS, 55)
        # Wrong stage matches nothing
        assert not await store.update_progress("scan_test_1", ScanStage.ANALYZING, 90)

        job = await store.get_job("scan_test_1")
        assert job.progress == 55


@pytest.mark.asyncio
async def test_finish_task_only_once(session_factory, make_scan, make_task):
    await make_scan(stage=ScanStage.ANALYZING)
    task = await make_task()

    async with session_factory() as db:
        store = ScanStore(db)
        assert await store.finish_task(task.id, TaskStatus.COMPLETED, confidence=0.9)
        assert not await store.finish_task(task.id, TaskStatus.FAILED, error_message="late")

        counts = await store.count_tasks_by_status("scan_test_1")
        assert counts == {"pending": 0, "completed": 1, "failed": 0}

        with pytest.raises(ValueError):
            await store.finish_task(task.id, TaskStatus.PENDING)


@pytest.mark.asyncio
async def test_create_job_starts_pending(session_factory):
    async with session_factory() as db:
        job = await ScanStore(db).create_job("user-9", trigger="scheduled")

    assert job.scan_id.startswith("scan_")
    assert job.stage == ScanStage.PENDING.value
    assert job.progress == 0
    assert job.trigger == "scheduled"
