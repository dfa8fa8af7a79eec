"""
Tests for task polling and the lifecycle coordinator.
"""
import asyncio
import base64

import pytest
import requests

from genstudio.exceptions import DownloadError, ProviderFailure, SubmissionError
from genstudio.schemas.generation import ImageJobRequest, VideoJobRequest

from .conftest import API_BASE, API_KEY, IMAGE_BYTES, VIDEO_BYTES, FakeResponse, status_payload

STATUS_URL = f"{API_BASE}/videos/task-1"
VIDEO_URL = "https://cdn.test/out/task-1.mp4"
IMAGE_URL = "https://cdn.test/out/a.png"


def video_files(data_dir):
    return sorted(p.name for p in (data_dir / "videos").iterdir())


def only_record(store, type="video"):
    items, total = store.list(type=type)
    assert total == 1
    return items[0]


def block_category(data_dir, category):
    folder = data_dir / category
    folder.rmdir()
    folder.write_bytes(b"not a directory")


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


# ============================================================
# TICK / FORCE REFRESH
# ============================================================

class TestForceRefresh:
    """One immediate status check through the coordinator."""

    def test_in_progress_snapshot(self, http, coordinator, store, video_record):
        """Provider words pass through; the record stays processing."""
        generation_id = video_record()
        http.add("GET", STATUS_URL, FakeResponse(200, payload=status_payload("rendering", 35)))

        snapshot = asyncio.run(coordinator.force_refresh("task-1", API_KEY))

        assert snapshot.status == "rendering"
        assert snapshot.progress == 35
        record = store.get_by_id(generation_id)
        assert record.status == "processing"
        assert record.progress == 35
        assert record.raw_api_response["status"] == "rendering"

    def test_full_progress_rendering_with_url_completes(self, http, coordinator, store, channel, data_dir, video_record):
        """Progress 100 plus a result URL wins over an in-progress word."""
        generation_id = video_record()
        http.add("GET", STATUS_URL,
                 FakeResponse(200, payload=status_payload("rendering", 100, video_url=VIDEO_URL)))
        http.add("GET", VIDEO_URL, FakeResponse(200, body=VIDEO_BYTES))

        snapshot = asyncio.run(coordinator.force_refresh("task-1", API_KEY))

        assert snapshot.status == "completed"
        record = store.get_by_id(generation_id)
        assert record.status == "completed"
        assert record.progress == 100
        assert record.result_url == VIDEO_URL
        assert record.result_path == snapshot.local_path
        assert len(video_files(data_dir)) == 1
        assert len(channel.recent()) == 1

    def test_concurrent_refresh_writes_one_file(self, http, coordinator, store, channel, data_dir, video_record):
        """Two simultaneous checks of a finished job share one download."""
        video_record()
        http.add("GET", STATUS_URL,
                 FakeResponse(200, payload=status_payload("succeeded", 100, video_url=VIDEO_URL)))
        http.add("GET", VIDEO_URL, FakeResponse(200, body=VIDEO_BYTES, delay=0.1))

        async def scenario():
            return await asyncio.gather(
                coordinator.force_refresh("task-1", API_KEY),
                coordinator.force_refresh("task-1", API_KEY),
            )

        first, second = asyncio.run(scenario())

        assert first.status == second.status == "completed"
        assert first.local_path == second.local_path
        assert http.count("GET", VIDEO_URL) == 1
        assert len(video_files(data_dir)) == 1
        assert len(channel.recent()) == 1

    def test_provider_failure(self, http, coordinator, store, data_dir, video_record):
        """The provider's message is kept on the failed record."""
        generation_id = video_record()
        http.add("GET", STATUS_URL,
                 FakeResponse(200, payload=status_payload("FAILED", error={"message": "content policy"})))

        snapshot = asyncio.run(coordinator.force_refresh("task-1", API_KEY))

        assert snapshot.status == "failed"
        assert snapshot.error == "content policy"
        record = store.get_by_id(generation_id)
        assert record.status == "failed"
        assert record.error_message == "content policy"
        assert video_files(data_dir) == []

    def test_provider_failure_without_message(self, http, coordinator, store, video_record):
        generation_id = video_record()
        http.add("GET", STATUS_URL, FakeResponse(200, payload=status_payload("cancelled")))

        asyncio.run(coordinator.force_refresh("task-1", API_KEY))

        assert store.get_by_id(generation_id).error_message == "Video generation failed"

    def test_completed_without_result_url_keeps_processing(self, http, coordinator, store, channel, video_record):
        """Completion with no URL yet is not terminal and nothing is downloaded."""
        generation_id = video_record()
        http.add("GET", STATUS_URL, FakeResponse(200, payload=status_payload("completed", 100)))

        snapshot = asyncio.run(coordinator.force_refresh("task-1", API_KEY))

        assert snapshot.status == "processing"
        assert snapshot.is_terminal is False
        record = store.get_by_id(generation_id)
        assert record.status == "processing"
        assert record.progress == 100
        assert record.error_message is None
        assert channel.recent() == []

    def test_download_cut_mid_transfer(self, http, coordinator, store, channel, data_dir, video_record):
        """A broken transfer fails the job and leaves no partial file."""
        generation_id = video_record()
        http.add("GET", STATUS_URL,
                 FakeResponse(200, payload=status_payload("succeeded", 100, video_url=VIDEO_URL)))
        cut = requests.exceptions.ChunkedEncodingError("connection broken")
        http.add("GET", VIDEO_URL, FakeResponse(200, chunks=[b"first half", cut]))

        snapshot = asyncio.run(coordinator.force_refresh("task-1", API_KEY))

        assert snapshot.status == "failed"
        record = store.get_by_id(generation_id)
        assert record.status == "failed"
        assert "download" in record.error_message.lower()
        assert record.result_path is None
        assert video_files(data_dir) == []
        assert channel.recent() == []

    def test_unwritable_video_folder_fails_job(self, http, coordinator, store, data_dir, video_record):
        """A filesystem error preparing the target is a download failure, not a crash."""
        generation_id = video_record()
        block_category(data_dir, "videos")
        http.add("GET", STATUS_URL,
                 FakeResponse(200, payload=status_payload("succeeded", 100, video_url=VIDEO_URL)))
        http.add("GET", VIDEO_URL, FakeResponse(200, body=VIDEO_BYTES))

        snapshot = asyncio.run(coordinator.force_refresh("task-1", API_KEY))

        assert snapshot.status == "failed"
        assert snapshot.error.startswith("Download failed: ")
        record = store.get_by_id(generation_id)
        assert record.status == "failed"
        assert record.error_message.startswith("Download failed: ")
        assert record.result_path is None

    def test_transport_error_leaves_record_untouched(self, http, coordinator, store, video_record):
        """A failed status query reports an error and persists nothing."""
        generation_id = video_record()
        http.add("GET", STATUS_URL, requests.exceptions.ConnectionError("refused"))

        snapshot = asyncio.run(coordinator.force_refresh("task-1", API_KEY))

        assert snapshot.status == "error"
        assert "Request failed" in snapshot.error
        record = store.get_by_id(generation_id)
        assert record.status == "processing"
        assert record.progress == 0

    def test_failed_record_short_circuits(self, http, coordinator, video_record):
        """A failed record is answered from the store."""
        video_record(status="failed", error_message="content policy")

        snapshot = asyncio.run(coordinator.force_refresh("task-1", API_KEY))

        assert snapshot.status == "failed"
        assert snapshot.error == "content policy"
        assert http.calls == []

    def test_completed_record_with_file_short_circuits(self, http, coordinator, data_dir, video_record):
        """A completed record whose file is on disk needs no network call."""
        path = data_dir / "videos" / "kept.mp4"
        path.write_bytes(VIDEO_BYTES)
        video_record(status="completed", progress=100, result_path=str(path), result_url=VIDEO_URL)

        snapshot = asyncio.run(coordinator.force_refresh("task-1", API_KEY))

        assert snapshot.status == "completed"
        assert snapshot.local_path == str(path)
        assert http.calls == []

    def test_completed_record_with_missing_file_refetches(self, http, coordinator, store, data_dir, video_record):
        """A completed record whose file vanished is downloaded again."""
        generation_id = video_record(status="completed", result_path=str(data_dir / "videos" / "gone.mp4"))
        http.add("GET", STATUS_URL,
                 FakeResponse(200, payload=status_payload("succeeded", 100, video_url=VIDEO_URL)))
        http.add("GET", VIDEO_URL, FakeResponse(200, body=VIDEO_BYTES))

        snapshot = asyncio.run(coordinator.force_refresh("task-1", API_KEY))

        assert snapshot.status == "completed"
        assert store.get_by_id(generation_id).result_path == snapshot.local_path
        assert len(video_files(data_dir)) == 1


# ============================================================
# BACKGROUND POLLING
# ============================================================

class TestVideoLifecycle:
    """Submission followed by background polling to a terminal state."""

    def test_processing_then_succeeded(self, http, coordinator, store, channel, data_dir):
        """Submit, poll through processing, download once, notify once."""
        http.add("POST", f"{API_BASE}/videos",
                 FakeResponse(200, payload={"id": "task-1", "status": "queued", "progress": 0}))
        http.add("GET", STATUS_URL,
                 FakeResponse(200, payload=status_payload("processing", 40)),
                 FakeResponse(200, payload=status_payload("succeeded", 100, video_url=VIDEO_URL)))
        http.add("GET", VIDEO_URL, FakeResponse(200, body=VIDEO_BYTES))

        async def scenario():
            response = await coordinator.submit_video_job(VideoJobRequest(prompt="a fox in snow"), API_KEY)
            assert coordinator.is_polling(response.task_id)
            snapshot = await asyncio.wait_for(coordinator.poller_task(response.task_id), timeout=5)
            return response, snapshot

        response, snapshot = asyncio.run(scenario())

        assert response.task_id == "task-1"
        assert response.status == "queued"
        assert snapshot.status == "completed"

        record = store.get_by_id(response.id)
        assert record.status == "completed"
        assert record.progress == 100
        assert record.task_id == "task-1"
        assert record.model == "veo3.1"
        assert record.result_path.startswith(str(data_dir / "videos"))
        assert record.result_path.endswith(".mp4")

        events = channel.recent()
        assert len(events) == 1
        assert events[0].payload() == {"id": response.id, "type": "video", "prompt": "a fox in snow"}
        assert coordinator.active_pollers() == []

    def test_result_url_published_after_completion(self, http, coordinator, store, data_dir, video_record):
        """A URL that arrives one tick after "completed" is still downloaded."""
        generation_id = video_record()
        http.add("GET", STATUS_URL,
                 FakeResponse(200, payload=status_payload("completed", 100)),
                 FakeResponse(200, payload=status_payload("completed", 100, video_url=VIDEO_URL)))
        http.add("GET", VIDEO_URL, FakeResponse(200, body=VIDEO_BYTES))

        async def scenario():
            coordinator.ensure_polling("task-1", API_KEY)
            return await asyncio.wait_for(coordinator.poller_task("task-1"), timeout=5)

        snapshot = asyncio.run(scenario())

        assert snapshot.status == "completed"
        assert http.count("GET", STATUS_URL) == 2
        record = store.get_by_id(generation_id)
        assert record.status == "completed"
        assert record.result_url == VIDEO_URL
        assert record.result_path == snapshot.local_path
        assert len(video_files(data_dir)) == 1

    def test_background_poller_and_refresh_share_download(self, http, coordinator, store, channel, data_dir, video_record):
        """A manual check racing the background poller still writes one file."""
        generation_id = video_record()
        http.add("GET", STATUS_URL,
                 FakeResponse(200, payload=status_payload("succeeded", 100, video_url=VIDEO_URL)))
        http.add("GET", VIDEO_URL, FakeResponse(200, body=VIDEO_BYTES, delay=0.1))

        async def scenario():
            coordinator.ensure_polling("task-1", API_KEY)
            background = coordinator.poller_task("task-1")
            await wait_until(lambda: coordinator.downloads.is_running("task-1"))
            refreshed = await coordinator.force_refresh("task-1", API_KEY)
            return refreshed, await asyncio.wait_for(background, timeout=5)

        refreshed, polled = asyncio.run(scenario())

        assert refreshed.status == polled.status == "completed"
        assert refreshed.local_path == polled.local_path
        assert http.count("GET", VIDEO_URL) == 1
        assert len(video_files(data_dir)) == 1
        assert len(channel.recent()) == 1
        assert store.get_by_id(generation_id).result_path == polled.local_path

    def test_poller_survives_transient_errors(self, http, coordinator, store, video_record):
        """Transport and upstream errors are retried on the next tick."""
        generation_id = video_record()
        http.add("GET", STATUS_URL,
                 requests.exceptions.ConnectionError("refused"),
                 FakeResponse(502, payload={"error": "bad gateway"}),
                 FakeResponse(200, payload=status_payload("failed", error="quota exceeded")))

        async def scenario():
            assert coordinator.ensure_polling("task-1", API_KEY)
            return await asyncio.wait_for(coordinator.poller_task("task-1"), timeout=5)

        snapshot = asyncio.run(scenario())

        assert snapshot.status == "failed"
        assert http.count("GET", STATUS_URL) == 3
        assert store.get_by_id(generation_id).error_message == "quota exceeded"

    def test_max_duration_detaches_without_failing(self, http, make_coordinator, store, video_record):
        """Watching stops but the job stays pending and resumable."""
        coordinator = make_coordinator(poll_interval=0.01, poll_max_duration=0.05)
        generation_id = video_record()
        http.add("GET", STATUS_URL, FakeResponse(200, payload=status_payload("processing", 10)))

        async def scenario():
            coordinator.ensure_polling("task-1", API_KEY)
            return await asyncio.wait_for(coordinator.poller_task("task-1"), timeout=5)

        assert asyncio.run(scenario()) is None
        assert store.get_by_id(generation_id).status == "processing"
        assert store.list_pending_task_ids() == ["task-1"]

    def test_submission_failure_marks_record_failed(self, http, coordinator, store):
        """No task id means no poller and a failed record."""
        http.add("POST", f"{API_BASE}/videos", FakeResponse(500, payload={"error": {"message": "server exploded"}}))

        with pytest.raises(SubmissionError) as exc:
            asyncio.run(coordinator.submit_video_job(VideoJobRequest(prompt="a fox"), API_KEY))

        assert exc.value.status_code == 500
        record = only_record(store)
        assert exc.value.generation_id == record.id
        assert record.status == "failed"
        assert record.error_message == "server exploded"
        assert record.task_id is None

    def test_immediately_failed_submission_is_not_polled(self, http, coordinator, store):
        http.add("POST", f"{API_BASE}/videos", FakeResponse(200, payload={"id": "task-1", "status": "error"}))

        async def scenario():
            response = await coordinator.submit_video_job(VideoJobRequest(prompt="a fox"), API_KEY)
            return response, coordinator.is_polling("task-1")

        response, polling = asyncio.run(scenario())

        assert response.status == "failed"
        assert polling is False
        record = only_record(store)
        assert record.status == "failed"
        assert record.task_id == "task-1"


class TestResumeAndShutdown:
    """Re-attaching pollers after a restart and stopping them again."""

    def test_resume_twice_starts_one_poller_per_task(self, make_coordinator, video_record):
        """Only pending jobs are resumed, and never twice."""
        coordinator = make_coordinator(poll_interval=30)
        video_record("task-a")
        video_record("task-b")
        video_record("task-c", status="completed")

        async def scenario():
            first = coordinator.resume_all(API_KEY)
            second = coordinator.resume_all(API_KEY)
            active = sorted(info.task_id for info in coordinator.active_pollers())
            await coordinator.shutdown()
            return first, second, active

        first, second, active = asyncio.run(scenario())

        assert sorted(first) == ["task-a", "task-b"]
        assert second == []
        assert active == ["task-a", "task-b"]
        assert coordinator.active_pollers() == []

    def test_resume_without_credential_is_noop(self, coordinator, video_record):
        video_record("task-a")
        assert coordinator.resume_all("") == []

    def test_no_polling_after_shutdown(self, coordinator, video_record):
        video_record("task-a")

        async def scenario():
            await coordinator.shutdown()
            return coordinator.ensure_polling("task-a", API_KEY)

        assert asyncio.run(scenario()) is False

    def test_shutdown_waits_for_inflight_download(self, http, coordinator, store, data_dir, video_record):
        """Shutdown returns only after a running transfer settles and cleans up."""
        generation_id = video_record()
        http.add("GET", STATUS_URL,
                 FakeResponse(200, payload=status_payload("succeeded", 100, video_url=VIDEO_URL)))
        http.add("GET", VIDEO_URL, FakeResponse(200, chunks=[b"a" * 64, b"b" * 64], delay=0.05))

        async def scenario():
            coordinator.ensure_polling("task-1", API_KEY)
            await wait_until(lambda: coordinator.downloads.is_running("task-1"))
            await coordinator.shutdown()
            return len(coordinator.downloads)

        assert asyncio.run(scenario()) == 0
        record = store.get_by_id(generation_id)
        assert record.status == "processing"
        assert record.result_path is None
        assert video_files(data_dir) == []
        assert store.list_pending_task_ids() == ["task-1"]


# ============================================================
# IMAGE JOBS
# ============================================================

class TestImageJobs:
    """Synchronous image generation."""

    def test_url_and_inline_images_saved(self, http, coordinator, store, channel, data_dir):
        """URL and base64 results both land under <base>/images."""
        http.add("POST", f"{API_BASE}/images/generations", FakeResponse(200, payload={"data": [
            {"url": IMAGE_URL},
            {"b64_json": base64.b64encode(IMAGE_BYTES).decode()},
        ]}))
        http.add("GET", IMAGE_URL, FakeResponse(200, body=IMAGE_BYTES))

        response = asyncio.run(coordinator.submit_image_job(ImageJobRequest(prompt="a cat", num_images=2), API_KEY))

        assert response.status == "completed"
        assert len(response.images) == 2
        assert len(set(response.images)) == 2
        assert all(path.startswith(str(data_dir / "images")) for path in response.images)

        record = store.get_by_id(response.id)
        assert record.status == "completed"
        assert record.result_path == response.images[0]
        assert record.result_url == IMAGE_URL
        assert record.raw_api_response["count"] == 2
        assert len(channel.recent()) == 1

    def test_partial_failure_keeps_saved_images(self, http, coordinator, store):
        """One broken item does not fail the job."""
        http.add("POST", f"{API_BASE}/images/generations", FakeResponse(200, payload={"data": [
            {"url": IMAGE_URL},
            {"url": "https://cdn.test/out/missing.png"},
        ]}))
        http.add("GET", IMAGE_URL, FakeResponse(200, body=IMAGE_BYTES))
        http.add("GET", "https://cdn.test/out/missing.png", FakeResponse(404, body=b"gone"))

        response = asyncio.run(coordinator.submit_image_job(ImageJobRequest(prompt="a cat"), API_KEY))

        assert len(response.images) == 1
        assert store.get_by_id(response.id).status == "completed"

    def test_no_images_returned(self, http, coordinator, store):
        http.add("POST", f"{API_BASE}/images/generations", FakeResponse(200, payload={"data": []}))

        with pytest.raises(ProviderFailure):
            asyncio.run(coordinator.submit_image_job(ImageJobRequest(prompt="a cat"), API_KEY))

        record = only_record(store, "image")
        assert record.status == "failed"
        assert record.error_message == "No images were returned by the provider"

    def test_all_downloads_failed(self, http, coordinator, store, data_dir):
        """Items that all fail to save give a download error, not an empty-result error."""
        http.add("POST", f"{API_BASE}/images/generations", FakeResponse(200, payload={"data": [{"url": IMAGE_URL}]}))
        http.add("GET", IMAGE_URL, FakeResponse(500, body=b"boom"))

        with pytest.raises(DownloadError):
            asyncio.run(coordinator.submit_image_job(ImageJobRequest(prompt="a cat"), API_KEY))

        record = only_record(store, "image")
        assert record.status == "failed"
        assert record.error_message.startswith("Download failed")
        assert list((data_dir / "images").iterdir()) == []

    def test_unwritable_image_folder_fails_job(self, http, coordinator, store, data_dir):
        """Inline images that cannot be written fail the job with a download error."""
        block_category(data_dir, "images")
        http.add("POST", f"{API_BASE}/images/generations", FakeResponse(200, payload={"data": [
            {"b64_json": base64.b64encode(IMAGE_BYTES).decode()},
        ]}))

        with pytest.raises(DownloadError, match="Download failed: cannot write to images"):
            asyncio.run(coordinator.submit_image_job(ImageJobRequest(prompt="a cat"), API_KEY))

        assert only_record(store, "image").status == "failed"

    def test_submission_rejected(self, http, coordinator, store):
        http.add("POST", f"{API_BASE}/images/generations",
                 FakeResponse(401, payload={"error": {"message": "invalid api key"}}))

        with pytest.raises(SubmissionError, match="invalid api key"):
            asyncio.run(coordinator.submit_image_job(ImageJobRequest(prompt="a cat"), API_KEY))

        record = only_record(store, "image")
        assert record.status == "failed"
        assert record.model == "gemini-3-pro-image-preview"
