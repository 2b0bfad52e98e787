"""Promotion sweeper: turn positive classifications into Subscription records.

Names are compared after normalization, so "Netflix" and "NETFLIX  Inc."
map to the same subscription for a user.
"""

import logging
import re
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import Row, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscan import metrics
from subscan.config import settings
from subscan.db.models import AnalysisTask, Subscription
from subscan.db.session import AsyncSessionLocal
from subscan.db.states import TaskStatus

logger = logging.getLogger(__name__)

AUTO_DETECTED_CATEGORY = "auto-detected"

COMPANY_SUFFIXES = frozenset({
    "inc",
    "llc",
    "ltd",
    "corp",
    "co",
    "gmbh",
    "plc",
    "limited",
    "corporation",
    "company",
})

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def normalize_name(name: Optional[str]) -> str:
    """
    Normalize a subscription name for duplicate detection.

    Lowercases, replaces punctuation with spaces, drops company suffix words
    and collapses whitespace. A name made only of suffix words keeps them.
    """
    if not name:
        return ""
    words = _NON_ALNUM_RE.sub(" ", name.lower()).split()
    kept = [w for w in words if w not in COMPANY_SUFFIXES]
    return " ".join(kept or words)


def names_match(a: str, b: str) -> bool:
    """Substring match in either direction on normalized names."""
    if not a or not b:
        return False
    return a in b or b in a


@dataclass
class SweepSummary:
    examined: int = 0
    promoted: int = 0
    linked_existing: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class PromotionSweeper:
    """Promotes completed, unlinked positive tasks."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.batch_size = batch_size or settings.sweeper_batch_size

    async def sweep(self) -> SweepSummary:
        """Promote unlinked positive tasks for every user (one batch)."""
        async with self.session_factory() as db:
            summary = await self._promote(db)
        if summary.examined:
            logger.info(
                f"Sweeper: examined {summary.examined}, promoted {summary.promoted}, "
                f"linked {summary.linked_existing} to existing subscriptions"
            )
        return summary

    async def promote_scan(self, scan_id: str) -> SweepSummary:
        """Promote unlinked positive tasks belonging to one scan."""
        async with self.session_factory() as db:
            return await self._promote(db, scan_id=scan_id)

    async def _promote(self, db: AsyncSession, scan_id: Optional[str] = None) -> SweepSummary:
        query = (
            select(
                AnalysisTask.id,
                AnalysisTask.user_id,
                AnalysisTask.subscription_name,
                AnalysisTask.price,
                AnalysisTask.currency,
                AnalysisTask.billing_cycle,
                AnalysisTask.provider,
                AnalysisTask.next_billing_date,
            )
            .where(
                AnalysisTask.status == TaskStatus.COMPLETED.value,
                AnalysisTask.subscription_name.is_not(None),
                AnalysisTask.subscription_id.is_(None),
            )
            .order_by(AnalysisTask.id.asc())
            .limit(self.batch_size)
        )
        if scan_id is not None:
            query = query.where(AnalysisTask.scan_id == scan_id)
        # Plain rows survive the rollback a lost insert race causes
        tasks = list((await db.execute(query)).all())

        summary = SweepSummary(examined=len(tasks))
        known: dict[str, list[tuple[str, int]]] = {}

        for task in tasks:
            normalized = normalize_name(task.subscription_name)
            if not normalized:
                continue

            if task.user_id not in known:
                known[task.user_id] = await self._user_subscriptions(db, task.user_id)
            existing = known[task.user_id]

            subscription_id = next(
                (sid for name, sid in existing if names_match(name, normalized)), None
            )
            if subscription_id is not None:
                await self._link(db, task.id, subscription_id)
                summary.linked_existing += 1
                continue

            subscription_id = await self._create(db, task, normalized)
            if subscription_id is None:
                # Another sweeper inserted the same name first
                known[task.user_id] = await self._user_subscriptions(db, task.user_id)
                subscription_id = next(
                    (sid for name, sid in known[task.user_id] if names_match(name, normalized)),
                    None,
                )
                if subscription_id is not None:
                    await self._link(db, task.id, subscription_id)
                    summary.linked_existing += 1
                continue

            existing.append((normalized, subscription_id))
            summary.promoted += 1

        metrics.record_subscription_promoted(summary.promoted)
        return summary

    async def _user_subscriptions(self, db: AsyncSession, user_id: str) -> list[tuple[str, int]]:
        result = await db.execute(
            select(Subscription.id, Subscription.name, Subscription.normalized_name).where(
                Subscription.user_id == user_id
            )
        )
        return [
            (normalized or normalize_name(name), sid) for sid, name, normalized in result.all()
        ]

    async def _create(self, db: AsyncSession, task: Row, normalized: str) -> Optional[int]:
        """Insert the subscription and link the task in one commit."""
        subscription = Subscription(
            user_id=task.user_id,
            name=task.subscription_name.strip(),
            price=task.price if task.price is not None else Decimal("0.00"),
            currency=task.currency or "USD",
            billing_cycle=task.billing_cycle or "monthly",
            category=AUTO_DETECTED_CATEGORY,
            provider=task.provider,
            next_billing_date=task.next_billing_date,
            is_manual=False,
            normalized_name=normalized,
            source_analysis_id=task.id,
        )
        db.add(subscription)
        try:
            await db.flush()
            await db.execute(
                update(AnalysisTask)
                .where(AnalysisTask.id == task.id, AnalysisTask.subscription_id.is_(None))
                .values(subscription_id=subscription.id)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info(f"Subscription '{normalized}' for user {task.user_id} already exists")
            return None

        logger.info(
            f"Promoted subscription '{subscription.name}' for user {task.user_id} "
            f"(task {task.id})"
        )
        return subscription.id

    async def _link(self, db: AsyncSession, task_id: int, subscription_id: int) -> None:
        await db.execute(
            update(AnalysisTask)
            .where(AnalysisTask.id == task_id, AnalysisTask.subscription_id.is_(None))
            .values(subscription_id=subscription_id)
            .execution_options(synchronize_session=False)
        )
        await db.commit()


# Global sweeper instance
promotion_sweeper = PromotionSweeper()
