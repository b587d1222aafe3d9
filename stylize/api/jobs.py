"""
Jobs API Routes
Create, refine, poll and place generation jobs.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from stylize.api.deps import get_orchestrator, get_owner_id
from stylize.schemas.job import (
    AvatarResponse,
    CreateJobRequest,
    CreateJobResponse,
    DeleteResponse,
    JobStatusView,
    JobSummary,
    PublishResponse,
    RefineJobRequest,
    RefineJobResponse,
    SetAvatarRequest,
)
from stylize.services.orchestrator import GenerationOrchestrator

router = APIRouter()


@router.post("", response_model=CreateJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    request: CreateJobRequest,
    owner_id: str = Depends(get_owner_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """
    Create a new generation job.
    Returns immediately; poll GET /jobs/{job_id} for the result.
    """
    return await orchestrator.create_job(owner_id, request)


@router.post("/{job_id}/refine", response_model=RefineJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def refine_job(
    job_id: str,
    request: RefineJobRequest,
    owner_id: str = Depends(get_owner_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Request a new version built from the latest one."""
    return await orchestrator.refine_job(owner_id, job_id, request.instruction)


@router.get("/{job_id}", response_model=JobStatusView)
async def get_job_status(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Get job status, versions and timing."""
    return await orchestrator.get_job_status(owner_id, job_id)


@router.get("", response_model=List[JobSummary])
async def list_jobs(
    limit: int = Query(20, ge=1, le=100),
    before: Optional[datetime] = None,
    owner_id: str = Depends(get_owner_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """List the caller's jobs, newest first."""
    return await orchestrator.list_jobs(owner_id, limit=limit, before=before)


@router.post("/{job_id}/publish", response_model=PublishResponse)
async def publish_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.publish(owner_id, job_id)


@router.post("/{job_id}/avatar", response_model=AvatarResponse)
async def set_avatar(
    job_id: str,
    request: SetAvatarRequest,
    owner_id: str = Depends(get_owner_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.set_avatar(owner_id, job_id, request.version_id)


@router.delete("/{job_id}", response_model=DeleteResponse)
async def delete_job(
    job_id: str,
    archive: bool = True,
    permanent: bool = False,
    owner_id: str = Depends(get_owner_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Delete a job's artifacts, optionally archiving the latest image first."""
    return await orchestrator.delete_job(owner_id, job_id, archive=archive, permanent=permanent)
