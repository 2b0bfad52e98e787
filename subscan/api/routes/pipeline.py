"""Worker and cron trigger endpoints for the scan pipeline."""

import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from subscan.api.deps import get_database, require_worker_key
from subscan.db.store import ScanStore
from subscan.worker.classifier import classification_worker
from subscan.worker.dispatcher import analysis_dispatcher
from subscan.worker.ingestion import ingestion_worker
from subscan.worker.sweeper import promotion_sweeper
from subscan.worker.watchdog import liveness_watchdog

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["pipeline"], dependencies=[Depends(require_worker_key)])


class ScanWorkerRequest(BaseModel):
    """Request model for the ingestion trigger."""
    scan_id: str = Field(..., min_length=1)
    resume: bool = False


class ClassifyRequest(BaseModel):
    """Dispatch payload accepted by the classification trigger."""
    scan_ids: List[str] = Field(..., min_length=1)
    user_ids: List[str] = []


class AcceptedResponse(BaseModel):
    accepted: bool = True
    scan_ids: List[str]


async def _run_ingestion(scan_id: str, resume: bool) -> None:
    result = await ingestion_worker.run(scan_id, resume=resume)
    logger.info(f"Ingestion trigger for {scan_id[:16]} finished: stage={result.stage}")


async def _start_ingestion(
    scan_id: str,
    resume: bool,
    background_tasks: BackgroundTasks,
    db: AsyncSession,
) -> AcceptedResponse:
    job = await ScanStore(db).get_job(scan_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Scan not found")

    background_tasks.add_task(_run_ingestion, scan_id, resume)
    return AcceptedResponse(scan_ids=[scan_id])


@router.post("/scan-worker", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_ingestion(
    request: ScanWorkerRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_database),
):
    """Run the ingestion worker for one scan in the background."""
    return await _start_ingestion(request.scan_id, request.resume, background_tasks, db)


@router.get("/scan-worker", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_ingestion_get(
    background_tasks: BackgroundTasks,
    scan_id: Optional[str] = None,
    db: AsyncSession = Depends(get_database),
):
    """GET variant of the ingestion trigger (``?scan_id=``)."""
    if not scan_id:
        raise HTTPException(status_code=400, detail="scan_id is required")
    return await _start_ingestion(scan_id, False, background_tasks, db)


@router.post("/classify", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_classification(request: ClassifyRequest, background_tasks: BackgroundTasks):
    """Run the classification worker for a dispatched batch in the background."""
    background_tasks.add_task(classification_worker.run, request.scan_ids, request.user_ids)
    return AcceptedResponse(scan_ids=request.scan_ids)


@router.api_route("/cron/dispatch", methods=["GET", "POST"])
async def cron_dispatch():
    """Dispatch every scan ready for analysis."""
    summary = await analysis_dispatcher.dispatch()
    return summary.to_dict()


@router.api_route("/cron/sweep", methods=["GET", "POST"])
async def cron_sweep():
    """Promote completed classifications into subscriptions."""
    summary = await promotion_sweeper.sweep()
    return summary.to_dict()


@router.api_route("/cron/watchdog", methods=["GET", "POST"])
async def cron_watchdog():
    """Run one liveness watchdog pass."""
    report = await liveness_watchdog.run()
    return report.to_dict()
