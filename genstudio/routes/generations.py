"""
GenStudio Generation Routes
Submit image/video jobs, check video status, browse history
"""
from fastapi import APIRouter, Depends, Query, Request
from typing import Optional

from ..auth import get_api_key
from ..config import get_settings
from ..exceptions import GenStudioError
from ..limiter import limiter
from ..models.generation import GenerationStatus, GenerationType
from ..responses import bad_request, from_generation_error, not_found, paginated, success
from ..schemas.generation import ImageJobRequest, ResumeResponse, VideoJobRequest
from ..worker.coordinator import LifecycleCoordinator

router = APIRouter(prefix="/api", tags=["generations"])


def get_coordinator(request: Request) -> LifecycleCoordinator:
    return request.app.state.coordinator


def submit_rate_limit() -> str:
    return get_settings().submit_rate_limit


# ============================================================
# SUBMISSION
# ============================================================

@router.post("/images/generate")
@limiter.limit(submit_rate_limit)
async def generate_images(
    request: Request,
    body: ImageJobRequest,
    api_key: str = Depends(get_api_key),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    """Generate images and save them locally (blocks until saved)."""
    if not body.prompt.strip():
        bad_request("prompt must not be blank", "INVALID_PROMPT")

    try:
        result = await coordinator.submit_image_job(body, api_key)
    except GenStudioError as e:
        raise from_generation_error(e) from e
    return success(result.model_dump(), message="Images generated")


@router.post("/videos/generate")
@limiter.limit(submit_rate_limit)
async def generate_video(
    request: Request,
    body: VideoJobRequest,
    api_key: str = Depends(get_api_key),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    """
    Submit a video job.

    Returns as soon as the provider assigned a task id; a background poller
    watches the job and downloads the result.
    """
    if not body.has_content():
        bad_request("prompt, system_context or storyboard is required", "INVALID_PROMPT")

    try:
        result = await coordinator.submit_video_job(body, api_key)
    except GenStudioError as e:
        raise from_generation_error(e) from e
    return success(result.model_dump(), message="Video job submitted")


# ============================================================
# VIDEO TASKS
# ============================================================

@router.get("/videos/{task_id}/status")
async def video_status(
    task_id: str,
    api_key: str = Depends(get_api_key),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    """Check a video task right now ("check now")."""
    if coordinator.store.get_by_task_id(task_id) is None:
        not_found("Video task", task_id)

    snapshot = await coordinator.force_refresh(task_id, api_key)
    return success(snapshot.model_dump())


@router.post("/videos/resume")
async def resume_videos(
    limit: Optional[int] = Query(None, ge=1, le=5000),
    api_key: str = Depends(get_api_key),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    """Re-attach pollers to every video job still in flight."""
    resumed = coordinator.resume_all(api_key, limit=limit)
    response = ResumeResponse(resumed=resumed, active=len(coordinator.active_pollers()))
    return success(response.model_dump())


@router.get("/tasks")
async def list_tasks(
    limit: int = Query(100, ge=1, le=500),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    """Non-terminal records plus what the background pollers are doing."""
    records = coordinator.store.list_non_terminal(limit=limit)
    return success({
        "records": [record.model_dump(mode="json") for record in records],
        "pollers": [info.model_dump(mode="json") for info in coordinator.active_pollers()],
        "downloads": coordinator.downloads.keys(),
    })


# ============================================================
# HISTORY
# ============================================================

@router.get("/generations")
async def list_generations(
    type: Optional[GenerationType] = None,
    status: Optional[GenerationStatus] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    items, total = coordinator.store.list(
        type=type.value if type else None,
        status=status.value if status else None,
        search=search,
        page=page,
        page_size=per_page,
    )
    return paginated([item.model_dump(mode="json") for item in items], total, page, per_page)


@router.get("/generations/stats")
async def generation_stats(coordinator: LifecycleCoordinator = Depends(get_coordinator)):
    return success(coordinator.store.stats())


@router.get("/generations/{generation_id}")
async def get_generation(
    generation_id: str,
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    record = coordinator.store.get_by_id(generation_id)
    if record is None:
        not_found("Generation", generation_id)
    return success(record.model_dump(mode="json"))
