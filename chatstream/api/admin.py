"""Queue diagnostics endpoints."""

from fastapi import APIRouter, HTTPException, Query, Request

from chatstream.core.logging import get_logger
from chatstream.models.job import AIJob
from chatstream.queue.backend import JobQueue, QueueStats

logger = get_logger(__name__)
router = APIRouter()


def _get_queue(request: Request, name: str) -> JobQueue:
    queues: dict[str, JobQueue] = request.app.state.queues
    queue = queues.get(name)
    if queue is None:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown queue {name}. Known queues: {', '.join(sorted(queues))}",
        )
    return queue


@router.get("/admin/queues", response_model=list[QueueStats])
async def list_queues(request: Request):
    """Depth and retained-job counts for every queue."""
    return [await queue.stats() for queue in request.app.state.queues.values()]


@router.get("/admin/queues/{name}", response_model=QueueStats)
async def get_queue_stats(name: str, request: Request):
    return await _get_queue(request, name).stats()


@router.get("/admin/queues/{name}/failed", response_model=list[AIJob])
async def list_failed_jobs(
    name: str,
    request: Request,
    limit: int = Query(20, ge=1, le=500, description="Number of jobs to return"),
):
    """
    Most recent terminally failed jobs, newest first.

    Failed jobs are retained in a capped list, so older failures
    eventually drop off.
    """
    jobs = await _get_queue(request, name).recent("failed", limit)
    logger.info(f"Listed {len(jobs)} failed jobs", queue=name)
    return jobs


@router.get("/admin/queues/{name}/completed", response_model=list[AIJob])
async def list_completed_jobs(
    name: str,
    request: Request,
    limit: int = Query(20, ge=1, le=100),
):
    return await _get_queue(request, name).recent("completed", limit)
