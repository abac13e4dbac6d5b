from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.archiver.dependencies import get_jobs_repository, get_registry
from backend.archiver.models.job_contracts import JobInstance, JobState
from backend.archiver.repositories.jobs_repository import JobsRepository
from backend.archiver.services.job_registry import JobRegistry, UnknownJobKindError

router = APIRouter()


def _empty_args() -> dict[str, Any]:
    return {}


class EnqueueJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: str = Field(min_length=1)
    args: dict[str, Any] = Field(default_factory=_empty_args)
    available_at: datetime | None = None


class EnqueueJobResponse(BaseModel):
    job_id: str
    kind: str
    queue: str


class JobSummary(BaseModel):
    job_id: str
    kind: str
    queue: str
    state: JobState
    attempt: int
    max_attempts: int
    available_at: datetime
    last_error: str | None = None

    @classmethod
    def from_instance(cls, job: JobInstance) -> JobSummary:
        return cls(
            job_id=job.job_id,
            kind=job.kind,
            queue=job.queue,
            state=job.state,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            available_at=job.available_at,
            last_error=job.last_error,
        )


class JobsOverview(BaseModel):
    counts: dict[str, int]
    recent: list[JobSummary]


@router.get("/jobs", response_model=JobsOverview, tags=["jobs"], operation_id="list_jobs")
def list_jobs(
    jobs: Annotated[JobsRepository, Depends(get_jobs_repository)],
    state: JobState | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> JobsOverview:
    return JobsOverview(
        counts=jobs.counts_by_state(),
        recent=[JobSummary.from_instance(job) for job in jobs.list_jobs(state=state, limit=limit)],
    )


@router.get("/jobs/kinds", response_model=list[str], tags=["jobs"], operation_id="list_job_kinds")
def list_job_kinds(registry: Annotated[JobRegistry, Depends(get_registry)]) -> list[str]:
    return registry.kinds()


@router.post(
    "/jobs",
    response_model=EnqueueJobResponse,
    status_code=201,
    tags=["jobs"],
    operation_id="enqueue_job",
)
def enqueue_job(
    request: EnqueueJobRequest,
    jobs: Annotated[JobsRepository, Depends(get_jobs_repository)],
    registry: Annotated[JobRegistry, Depends(get_registry)],
) -> EnqueueJobResponse:
    context_tokens = bind_contextvars(job_kind=request.kind)
    try:
        try:
            descriptor = registry.get(request.kind)
        except UnknownJobKindError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        job_id = registry.enqueue(jobs, request.kind, request.args, available_at=request.available_at)
        return EnqueueJobResponse(job_id=job_id, kind=descriptor.kind, queue=descriptor.queue)
    finally:
        reset_contextvars(**context_tokens)
