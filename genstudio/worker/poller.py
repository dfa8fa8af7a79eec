"""
Video Task Poller

Watches one remote task id until it reaches a terminal state:

    processing -> completed | failed

Each tick queries the provider, persists the snapshot, and on completion
downloads the artifact through the shared, deduplicated download path.
Terminal states are absorbing: a terminal record is answered from the
store without a network call.
"""

import asyncio
import os
from datetime import datetime, timezone
from typing import Optional

from ..exceptions import ApiRequestError, DownloadError, GenStudioError, PollError, ProviderFailure
from ..logging_config import poller_logger
from ..models.generation import GenerationStatus
from ..schemas.generation import GenerationRecord, StatusSnapshot
from .api_client import RemoteApiClient, StatusResult
from .downloader import ArtifactDownloader, build_filename
from .record_store import GenerationStore
from .status_map import COMPLETED, FAILED

DEFAULT_FAILURE_MESSAGE = "Video generation failed"


def verified_file(path: Optional[str]) -> Optional[str]:
    """Return ``path`` if it is an existing, non-empty file."""
    if not path:
        return None
    try:
        if os.path.isfile(path) and os.path.getsize(path) > 0:
            return path
    except OSError:
        return None
    return None


class TaskPoller:
    """Polls one task id. ``tick`` is also used directly for manual refreshes."""

    def __init__(
        self,
        task_id: str,
        api_key: str,
        store: GenerationStore,
        api_client: RemoteApiClient,
        downloader: ArtifactDownloader,
        interval: float = 5.0,
        max_duration: Optional[float] = None,
        slow_warning_attempts: int = 120,
    ):
        self.task_id = task_id
        self.api_key = api_key
        self.store = store
        self.api_client = api_client
        self.downloader = downloader
        self.interval = interval
        self.max_duration = max_duration
        self.slow_warning_attempts = slow_warning_attempts

        self.attempts = 0
        self.started_at = datetime.now(timezone.utc)
        self.last_status: Optional[str] = None
        self.log = poller_logger.bind(task_id=task_id)

    # ============================================================
    # SINGLE TICK
    # ============================================================

    def _stored_terminal(self) -> Optional[StatusSnapshot]:
        record = self.store.get_by_task_id(self.task_id)
        if record is None:
            return None

        if record.status == GenerationStatus.COMPLETED.value:
            path = verified_file(record.result_path)
            if path:
                return StatusSnapshot(
                    status=COMPLETED,
                    progress=100,
                    result_url=record.result_url,
                    local_path=path,
                )
            # Completed but the file is gone: fetch it again
            self.log.warning("completed_without_file", path=record.result_path)
            return None

        if record.status == GenerationStatus.FAILED.value:
            return StatusSnapshot(
                status=FAILED,
                progress=record.progress,
                result_url=record.result_url,
                error=record.error_message or DEFAULT_FAILURE_MESSAGE,
            )
        return None

    async def tick(self) -> StatusSnapshot:
        """Run one status check. Raises PollError on transient failures."""
        self.attempts += 1

        stored = self._stored_terminal()
        if stored is not None:
            self.last_status = stored.status
            return stored

        try:
            result = await asyncio.to_thread(self.api_client.query_status, self.task_id, self.api_key)
        except ApiRequestError as e:
            raise PollError(e.message) from e

        self.last_status = result.status
        return await self._advance(result)

    async def _advance(self, result: StatusResult) -> StatusSnapshot:
        # The record only becomes completed once the artifact is on disk
        self.store.update_by_task_id(
            self.task_id,
            status=GenerationStatus.PROCESSING,
            progress=result.progress,
            raw_api_response=result.raw,
        )

        if result.status == COMPLETED:
            if result.result_url:
                return await self._download(result)
            # The URL can be published on a later tick
            self.log.warning("completed_without_result_url", progress=result.progress)
            return StatusSnapshot(status=GenerationStatus.PROCESSING.value, progress=result.progress)

        if result.status == FAILED:
            return self._fail(ProviderFailure(result.error or DEFAULT_FAILURE_MESSAGE), result)

        return StatusSnapshot(status=result.status, progress=result.progress, result_url=result.result_url)

    def _reusable_path(self) -> Optional[str]:
        record = self.store.get_by_task_id(self.task_id)
        if record is not None and record.status == GenerationStatus.COMPLETED.value:
            return verified_file(record.result_path)
        return None

    def _filename(self, record: Optional[GenerationRecord]) -> str:
        text = ""
        if record is not None:
            text = (record.prompt or record.storyboard or record.system_context or "").strip()
        return build_filename(text, fallback=self.task_id or "video", ext=".mp4")

    async def _download(self, result: StatusResult) -> StatusSnapshot:
        url = result.result_url

        def persist(path: str) -> None:
            self.store.update_by_task_id(
                self.task_id,
                status=GenerationStatus.COMPLETED,
                progress=100,
                result_url=url,
                result_path=path,
                raw_api_response=result.raw,
                error_message=None,
            )

        name = self._filename(self.store.get_by_task_id(self.task_id))
        try:
            path = await self.downloader.download(
                url,
                name,
                "videos",
                key=self.task_id,
                reuse=self._reusable_path,
                on_saved=persist,
            )
        except DownloadError as e:
            snapshot = self._fail(DownloadError(f"Download failed: {e.message}"), result)
            snapshot.progress = result.progress
            return snapshot

        self.log.info("video_downloaded", url=url, path=path)
        return StatusSnapshot(status=COMPLETED, progress=100, result_url=url, local_path=path)

    def _fail(self, error: GenStudioError, result: StatusResult) -> StatusSnapshot:
        self.store.update_by_task_id(
            self.task_id,
            status=GenerationStatus.FAILED,
            error_message=error.message,
            raw_api_response=result.raw,
        )
        self.log.warning("task_failed", reason=type(error).__name__, error=error.message)
        return StatusSnapshot(status=FAILED, result_url=result.result_url, error=error.message)

    # ============================================================
    # BACKGROUND LOOP
    # ============================================================

    async def run(self) -> Optional[StatusSnapshot]:
        """Tick every ``interval`` seconds until terminal.

        Returns the terminal snapshot, or None when ``max_duration`` elapsed
        first (the record is left untouched and can be resumed later).
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        self.log.info("poller_started", interval=self.interval)

        while True:
            await asyncio.sleep(self.interval)

            try:
                snapshot = await self.tick()
            except PollError as e:
                self.log.warning("poll_failed", attempt=self.attempts, error=e.message)
            except Exception as e:
                self.log.error("poll_unexpected_error", error=e, attempt=self.attempts)
            else:
                if snapshot.is_terminal:
                    self.log.info(
                        "poller_finished",
                        status=snapshot.status,
                        attempts=self.attempts,
                    )
                    return snapshot

            elapsed = loop.time() - started
            if self.slow_warning_attempts and self.attempts % self.slow_warning_attempts == 0:
                self.log.warning(
                    "task_still_processing",
                    attempts=self.attempts,
                    elapsed_seconds=round(elapsed, 1),
                    last_status=self.last_status,
                )

            if self.max_duration is not None and elapsed >= self.max_duration:
                self.log.warning(
                    "poller_detached",
                    attempts=self.attempts,
                    elapsed_seconds=round(elapsed, 1),
                )
                return None
