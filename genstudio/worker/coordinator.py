"""
Generation Lifecycle Coordinator

Owns the set of in-flight pollers (one per task id) and the shared download
registry:
- submit image jobs (synchronous end to end)
- submit video jobs and start watching them
- resume watching pending video jobs after a restart
- force an immediate status check ("check now")
"""

import asyncio
import base64
import binascii
import threading
from functools import partial
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy.orm import sessionmaker

from ..config import Settings
from ..exceptions import ApiRequestError, DownloadError, PollError, ProviderFailure, SubmissionError
from ..logging_config import api_logger, poller_logger, timed
from ..models.generation import GenerationStatus, GenerationType
from ..notifications import NotificationChannel
from ..schemas.generation import (
    ImageJobRequest,
    ImageJobResponse,
    PollerInfo,
    StatusSnapshot,
    VideoJobRequest,
    VideoJobResponse,
)
from .api_client import DEFAULT_VIDEO_MODEL, RemoteApiClient, resolve_image_model
from .downloader import ArtifactDownloader, build_filename
from .inflight import InFlightRegistry
from .poller import DEFAULT_FAILURE_MESSAGE, TaskPoller
from .record_store import GenerationStore
from .status_map import FAILED

NO_IMAGES_MESSAGE = "No images were returned by the provider"


class LifecycleCoordinator:
    """Entry point of the generation core."""

    def __init__(
        self,
        store: GenerationStore,
        api_client: RemoteApiClient,
        downloader: ArtifactDownloader,
        poll_interval: float = 5.0,
        poll_max_duration: Optional[float] = None,
        slow_warning_attempts: int = 120,
        resume_limit: int = 500,
    ):
        self.store = store
        self.api_client = api_client
        self.downloader = downloader
        self.downloads: InFlightRegistry = downloader.registry
        self.poll_interval = poll_interval
        self.poll_max_duration = poll_max_duration
        self.slow_warning_attempts = slow_warning_attempts
        self.resume_limit = resume_limit

        self._lock = threading.Lock()
        self._pollers: Dict[str, Tuple[TaskPoller, asyncio.Task]] = {}
        self._closed = False

    # ============================================================
    # SUBMISSION
    # ============================================================

    async def submit(
        self, kind: str, params: Union[ImageJobRequest, VideoJobRequest], api_key: str
    ) -> Union[ImageJobResponse, VideoJobResponse]:
        if kind == GenerationType.IMAGE.value:
            return await self.submit_image_job(params, api_key)
        if kind == GenerationType.VIDEO.value:
            return await self.submit_video_job(params, api_key)
        raise ValueError(f"Unknown job kind: {kind}")

    def _submission_failed(self, generation_id: str, error: ApiRequestError) -> SubmissionError:
        self.store.update_by_id(
            generation_id,
            status=GenerationStatus.FAILED,
            error_message=error.message,
            raw_api_response=error.payload,
        )
        api_logger.warning(
            "submission_failed",
            generation_id=generation_id,
            status_code=error.status_code,
            error=error.message,
        )
        return SubmissionError(error.message, generation_id=generation_id, status_code=error.status_code)

    @timed(api_logger)
    async def submit_image_job(self, params: ImageJobRequest, api_key: str) -> ImageJobResponse:
        generation_id = self.store.create({
            "type": GenerationType.IMAGE.value,
            "prompt": params.prompt,
            "negative_prompt": params.negative_prompt,
            "model": resolve_image_model(params.model),
            "aspect_ratio": params.aspect_ratio,
        })
        log = api_logger.bind(generation_id=generation_id)

        try:
            submission = await asyncio.to_thread(self.api_client.submit_image_job, params, api_key)
        except ApiRequestError as e:
            raise self._submission_failed(generation_id, e) from e

        paths: List[str] = []
        errors: List[str] = []
        for index, item in enumerate(submission.items):
            name = build_filename(params.prompt, fallback="image", ext=".png")
            try:
                if "url" in item:
                    path = await self.downloader.download(item["url"], name, "images")
                else:
                    path = self.downloader.save_bytes(base64.b64decode(item["b64"]), name, "images")
            except (DownloadError, binascii.Error, ValueError) as e:
                message = getattr(e, "message", str(e))
                errors.append(message)
                log.warning("image_save_failed", index=index, error=message)
                continue
            paths.append(path)

        if not paths:
            error = DownloadError(f"Download failed: {errors[0]}") if errors else ProviderFailure(NO_IMAGES_MESSAGE)
            self.store.update_by_id(
                generation_id,
                status=GenerationStatus.FAILED,
                error_message=error.message,
                raw_api_response=submission.raw,
            )
            raise error

        self.store.update_by_id(
            generation_id,
            status=GenerationStatus.COMPLETED,
            progress=100,
            result_path=paths[0],
            result_url=submission.items[0].get("url"),
            raw_api_response={"image_paths": paths, "count": len(paths), "raw": submission.raw},
        )
        log.info("image_job_completed", count=len(paths))
        return ImageJobResponse(id=generation_id, status=GenerationStatus.COMPLETED.value, images=paths)

    @timed(api_logger)
    async def submit_video_job(self, params: VideoJobRequest, api_key: str) -> VideoJobResponse:
        generation_id = self.store.create({
            "type": GenerationType.VIDEO.value,
            "prompt": params.prompt,
            "system_context": params.system_context,
            "storyboard": params.storyboard,
            "negative_prompt": params.negative_prompt,
            "model": params.model or DEFAULT_VIDEO_MODEL,
            "aspect_ratio": params.aspect_ratio,
            "duration": params.duration,
        })

        try:
            submission = await asyncio.to_thread(self.api_client.submit_video_job, params, api_key)
        except ApiRequestError as e:
            raise self._submission_failed(generation_id, e) from e

        status = self.api_client.vocabulary.normalize(submission.status)
        if status == FAILED:
            self.store.update_by_id(
                generation_id,
                task_id=submission.task_id,
                status=GenerationStatus.FAILED,
                error_message=DEFAULT_FAILURE_MESSAGE,
                raw_api_response=submission.raw,
            )
            return VideoJobResponse(id=generation_id, task_id=submission.task_id, status=FAILED)

        self.store.update_by_id(
            generation_id,
            task_id=submission.task_id,
            status=GenerationStatus.PROCESSING,
            progress=submission.progress,
            raw_api_response=submission.raw,
        )
        api_logger.info("video_job_submitted", generation_id=generation_id, task_id=submission.task_id)

        # Watch in the background so the caller is free as soon as we have a task id
        self.ensure_polling(submission.task_id, api_key)
        return VideoJobResponse(id=generation_id, task_id=submission.task_id, status=status)

    # ============================================================
    # POLLING
    # ============================================================

    def _new_poller(self, task_id: str, api_key: str) -> TaskPoller:
        return TaskPoller(
            task_id,
            api_key,
            self.store,
            self.api_client,
            self.downloader,
            interval=self.poll_interval,
            max_duration=self.poll_max_duration,
            slow_warning_attempts=self.slow_warning_attempts,
        )

    def ensure_polling(self, task_id: str, api_key: str) -> bool:
        """Start a background poller unless one is already watching ``task_id``.

        Must be called from the event loop. Returns True if a poller started.
        """
        if not task_id or not api_key:
            return False

        with self._lock:
            if self._closed or task_id in self._pollers:
                return False
            poller = self._new_poller(task_id, api_key)
            task = asyncio.get_running_loop().create_task(poller.run(), name=f"poll:{task_id}")
            self._pollers[task_id] = (poller, task)

        task.add_done_callback(partial(self._poller_done, task_id))
        return True

    def _poller_done(self, task_id: str, task: asyncio.Task) -> None:
        with self._lock:
            entry = self._pollers.get(task_id)
            if entry is not None and entry[1] is task:
                del self._pollers[task_id]

        if task.cancelled():
            poller_logger.debug("poller_cancelled", task_id=task_id)
            return
        error = task.exception()
        if error is not None:
            poller_logger.error("poller_crashed", error=error, task_id=task_id)

    def resume_all(self, api_key: str, limit: Optional[int] = None) -> List[str]:
        """Re-attach pollers to every pending video job. Idempotent."""
        if not api_key:
            poller_logger.info("resume_skipped", reason="no credential")
            return []

        task_ids = self.store.list_pending_task_ids(limit or self.resume_limit)
        started = [task_id for task_id in task_ids if self.ensure_polling(task_id, api_key)]
        poller_logger.info("pending_tasks_resumed", pending=len(task_ids), started=len(started))
        return started

    async def force_refresh(self, task_id: str, api_key: str) -> StatusSnapshot:
        """One immediate status check, safe alongside a background poller."""
        poller = self._new_poller(task_id, api_key)
        try:
            return await poller.tick()
        except PollError as e:
            return StatusSnapshot(status="error", error=e.message)

    # ============================================================
    # OBSERVATION / SHUTDOWN
    # ============================================================

    def active_pollers(self) -> List[PollerInfo]:
        with self._lock:
            pollers = [poller for poller, _ in self._pollers.values()]
        return [
            PollerInfo(
                task_id=poller.task_id,
                attempts=poller.attempts,
                started_at=poller.started_at,
                last_status=poller.last_status,
            )
            for poller in pollers
        ]

    def poller_task(self, task_id: str) -> Optional[asyncio.Task]:
        with self._lock:
            entry = self._pollers.get(task_id)
        return entry[1] if entry else None

    def is_polling(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._pollers

    async def shutdown(self) -> None:
        """Stop watching every task. Remote jobs are not cancelled."""
        with self._lock:
            self._closed = True
            tasks = [task for _, task in self._pollers.values()]

        self.downloader.close()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        # Shared downloads outlive their cancelled pollers
        downloads = len(self.downloads)
        await self.downloads.drain()
        poller_logger.info("coordinator_stopped", pollers=len(tasks), downloads=downloads)


def build_coordinator(
    settings: Settings,
    session_factory: sessionmaker,
    channel: Optional[NotificationChannel] = None,
    http_session=None,
) -> LifecycleCoordinator:
    """Wire the core from settings."""
    store = GenerationStore(session_factory, channel)
    api_client = RemoteApiClient(
        settings.api_base_url,
        session=http_session,
        timeout=settings.request_timeout_seconds,
    )
    downloader = ArtifactDownloader(
        settings.data_dir,
        session=http_session,
        timeout=settings.download_timeout_seconds,
        registry=InFlightRegistry("downloads"),
    )
    downloader.ensure_directories()

    return LifecycleCoordinator(
        store,
        api_client,
        downloader,
        poll_interval=settings.poll_interval_seconds,
        poll_max_duration=settings.poll_max_duration_seconds,
        slow_warning_attempts=settings.poll_slow_warning_attempts,
        resume_limit=settings.resume_limit,
    )
