"""Scan job stages, analysis task statuses and the allowed stage edges."""

from enum import Enum


class ScanStage(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    READY_FOR_ANALYSIS = "ready_for_analysis"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STAGES = frozenset({ScanStage.COMPLETED, ScanStage.FAILED})

ACTIVE_STAGES = (
    ScanStage.PENDING,
    ScanStage.IN_PROGRESS,
    ScanStage.READY_FOR_ANALYSIS,
    ScanStage.ANALYZING,
)

# Position in the forward chain; failed sits outside it
STAGE_ORDER = {stage: index for index, stage in enumerate(ACTIVE_STAGES + (ScanStage.COMPLETED,))}

# Progress checkpoints written when a stage is entered
STAGE_PROGRESS = {
    ScanStage.PENDING: 0,
    ScanStage.IN_PROGRESS: 15,
    ScanStage.READY_FOR_ANALYSIS: 70,
    ScanStage.ANALYZING: 70,
    ScanStage.COMPLETED: 100,
}

INGEST_PROGRESS_FLOOR = 15
INGEST_PROGRESS_CEILING = 70
ANALYSIS_PROGRESS_CEILING = 99


def is_allowed_transition(current: ScanStage, new: ScanStage) -> bool:
    """
    Check whether ``current -> new`` is a legal edge.

    Legal edges move forward along the chain (skipping ahead is allowed for
    degraded and watchdog-forced advances, but only ``analyzing`` may reach
    ``completed``), go to ``failed`` from any non-terminal stage, or re-enter
    ``analyzing`` for a forced re-dispatch.
    """
    current = ScanStage(current)
    new = ScanStage(new)

    if current.is_terminal:
        return False
    if new == ScanStage.FAILED:
        return True
    if current == new:
        return current == ScanStage.ANALYZING
    if new == ScanStage.COMPLETED:
        return current == ScanStage.ANALYZING
    return STAGE_ORDER[new] > STAGE_ORDER[current]
