"""Scan initiation and status polling endpoints."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from subscan.api.deps import get_database
from subscan.db.store import ScanStore
from subscan.worker.ingestion import ingestion_worker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scans", tags=["scans"])


class ScanStatusResponse(BaseModel):
    """What a polling client sees for one scan."""
    scan_id: str
    user_id: str
    stage: str
    progress: int
    emails_found: int
    emails_to_process: int
    emails_processed: int
    subscriptions_found: int
    tasks_failed: int
    degraded: bool
    error_message: Optional[str]
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class StartScanRequest(BaseModel):
    """Request model for starting a scan."""
    user_id: str = Field(..., min_length=1)
    trigger: str = Field("manual", pattern="^(manual|scheduled)$")


async def _run_ingestion(scan_id: str) -> None:
    await ingestion_worker.run(scan_id)


@router.post("", response_model=ScanStatusResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_scan(
    request: StartScanRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_database),
):
    """Create a pending scan and start ingesting it in the background."""
    job = await ScanStore(db).create_job(request.user_id, trigger=request.trigger)
    background_tasks.add_task(_run_ingestion, job.scan_id)
    return job


@router.get("/{scan_id}", response_model=ScanStatusResponse)
async def get_scan(scan_id: str, db: AsyncSession = Depends(get_database)):
    """Poll a scan's stage, progress and counters."""
    job = await ScanStore(db).get_job(scan_id)
    if not job:
        raise HTTPException(status_code=404, detail="Scan not found")
    return job
