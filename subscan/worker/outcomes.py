"""Per-item outcomes and the batch summaries built from them.

Workers record one ``ItemOutcome`` per message or task instead of letting
per-item exceptions drive control flow.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class Outcome(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    COMPLETED = "completed"
    FAILED = "failed"
    DEFERRED = "deferred"


@dataclass
class ItemOutcome:
    """Result of handling one message or task."""

    item_id: str
    outcome: Outcome
    detail: Optional[str] = None

    @classmethod
    def completed(cls, item_id, detail: Optional[str] = None) -> "ItemOutcome":
        return cls(str(item_id), Outcome.COMPLETED, detail)

    @classmethod
    def failed(cls, item_id, detail: str) -> "ItemOutcome":
        return cls(str(item_id), Outcome.FAILED, detail)

    @classmethod
    def deferred(cls, item_id, detail: Optional[str] = None) -> "ItemOutcome":
        return cls(str(item_id), Outcome.DEFERRED, detail)

    def to_dict(self) -> dict[str, Any]:
        return {"item_id": self.item_id, "outcome": self.outcome.value, "detail": self.detail}


@dataclass
class BatchSummary:
    """Outcomes of one scan's pass through the classification worker."""

    scan_id: str
    outcomes: list[ItemOutcome] = field(default_factory=list)
    stage: Optional[str] = None
    skipped: bool = False

    def add(self, outcome: ItemOutcome) -> None:
        self.outcomes.append(outcome)

    def _count(self, kind: Outcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome == kind)

    @property
    def completed(self) -> int:
        return self._count(Outcome.COMPLETED)

    @property
    def failed(self) -> int:
        return self._count(Outcome.FAILED)

    @property
    def deferred(self) -> int:
        return self._count(Outcome.DEFERRED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scan_id": self.scan_id,
            "stage": self.stage,
            "skipped": self.skipped,
            "completed": self.completed,
            "failed": self.failed,
            "deferred": self.deferred,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class ClassificationSummary:
    batches: list[BatchSummary] = field(default_factory=list)

    @property
    def completed(self) -> int:
        return sum(b.completed for b in self.batches)

    @property
    def failed(self) -> int:
        return sum(b.failed for b in self.batches)

    @property
    def deferred(self) -> int:
        return sum(b.deferred for b in self.batches)

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": self.completed,
            "failed": self.failed,
            "deferred": self.deferred,
            "scans": [b.to_dict() for b in self.batches],
        }


@dataclass
class IngestionResult:
    """What one ingestion worker invocation achieved."""

    scan_id: str
    stage: Optional[str]
    emails_found: int = 0
    emails_stored: int = 0
    degraded: bool = False
    failures: list[ItemOutcome] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["failures"] = [o.to_dict() for o in self.failures]
        return data
