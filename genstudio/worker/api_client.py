"""
Remote Generation API Client

Submit image/video jobs and query video task status:
- Image jobs: JSON POST /images/generations
- Video jobs: multipart POST /videos (fallback /video)
- Status: GET /videos/{id} (fallback /video/{id})

Endpoint fallback only happens when the server reports the path itself as
invalid. Every other failure surfaces as ApiRequestError.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union
from urllib.parse import quote

import requests

from ..config import DEFAULT_API_BASE_URL, normalize_base_url
from ..exceptions import ApiRequestError
from ..logging_config import get_logger
from ..schemas.generation import ImageJobRequest, VideoJobRequest
from .status_map import StatusVocabulary, parse_progress

logger = get_logger("api_client")

IMAGE_MODELS = frozenset({
    "nano-banana-2",
    "nano-banana-2-2k-vip",
    "gemini-3-pro-image-preview",
    "gemini-3-pro-image-preview-2k-vip",
    "gpt-image-1.5",
})
DEFAULT_IMAGE_MODEL = "gemini-3-pro-image-preview"
IMAGE_SIZES = {
    "1:1": "1024x1024",
    "16:9": "1792x1024",
    "9:16": "1024x1792",
    "4:3": "1024x1024",
    "3:4": "1024x1024",
}
MAX_IMAGES = 10

DEFAULT_VIDEO_MODEL = "veo3.1"
VIDEO_SECONDS = "8"
VIDEO_SUBMIT_PATHS = ("/videos", "/video")
VIDEO_STATUS_PATHS = ("/videos/{task_id}", "/video/{task_id}")


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class ImageSubmission:
    """Provider response for an image job. Each item has ``url`` or ``b64``."""
    items: List[Dict[str, str]]
    raw: Any


@dataclass
class VideoSubmission:
    task_id: str
    status: str
    progress: int
    raw: Any


@dataclass
class StatusResult:
    status: str
    progress: int
    result_url: Optional[str] = None
    error: Optional[str] = None
    raw: Any = field(default=None, repr=False)


def extract_error_message(payload: Any) -> Optional[str]:
    """Pull a human readable message out of an error payload"""
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    message = payload.get("message")
    return str(message) if message else None


def resolve_image_model(model: Optional[str]) -> str:
    return model if model in IMAGE_MODELS else DEFAULT_IMAGE_MODEL


def build_video_prompt(params: VideoJobRequest) -> str:
    """The provider takes one prompt field, so the extra sections are folded in."""
    sections = [
        ("System Context", params.system_context),
        ("Storyboard", params.storyboard),
        ("Negative Prompt", params.negative_prompt),
        ("Prompt", params.prompt),
    ]
    return "\n\n".join(f"{label}:\n{text}" for label, text in sections if text)


class RemoteApiClient:
    """Thin synchronous client over ``requests``.

    Callers on the event loop run these methods in a worker thread.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE_URL,
        session: Optional[requests.Session] = None,
        timeout: float = 60.0,
        vocabulary: Optional[StatusVocabulary] = None,
    ):
        self.base_url = normalize_base_url(base_url)
        self.session = session or requests.Session()
        self.timeout = timeout
        self.vocabulary = vocabulary or StatusVocabulary()

    # ============================================================
    # URL HANDLING
    # ============================================================

    def resolve_url(self, path_or_url: str) -> str:
        value = (path_or_url or "").strip()
        if not value:
            raise ApiRequestError(f"Invalid URL (base: {self.base_url}): empty request path")

        if re.match(r"^https?://", value, re.IGNORECASE):
            return value

        path = value if value.startswith("/") else f"/{value}"
        # Accept '/v1/...' even when the base already ends with '/v1'
        if path.startswith("/v1/") and self.base_url.endswith("/v1"):
            path = path[3:]
        return f"{self.base_url}{path}"

    # ============================================================
    # TRANSPORT
    # ============================================================

    def _request(self, method: str, path: str, api_key: str, **kwargs) -> Any:
        url = self.resolve_url(path)
        headers = {"Authorization": f"Bearer {api_key}", "Accept": "application/json"}

        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema) as e:
            raise ApiRequestError(f"Invalid URL (base: {self.base_url}) ({method} {path}): {e}") from e
        except requests.RequestException as e:
            raise ApiRequestError(f"Request failed ({method} {path}): {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not 200 <= response.status_code < 300:
            message = extract_error_message(payload) or f"HTTP {response.status_code}: {response.text}"
            raise ApiRequestError(message, status_code=response.status_code, payload=payload)

        return payload if payload is not None else response.text

    def _request_with_fallback(self, method: str, paths: Sequence[str], api_key: str, **kwargs) -> Any:
        last_error: Optional[ApiRequestError] = None
        for path in paths:
            try:
                return self._request(method, path, api_key, **kwargs)
            except ApiRequestError as e:
                if not e.is_invalid_endpoint:
                    raise
                last_error = e
                logger.info("endpoint_fallback", method=method, path=path, error=e.message)
        raise last_error

    # ============================================================
    # OPERATIONS
    # ============================================================

    def submit_job(
        self, kind: str, params: Union[ImageJobRequest, VideoJobRequest], api_key: str
    ) -> Union[ImageSubmission, VideoSubmission]:
        if kind == "image":
            return self.submit_image_job(params, api_key)
        if kind == "video":
            return self.submit_video_job(params, api_key)
        raise ValueError(f"Unknown job kind: {kind}")

    def submit_image_job(self, params: ImageJobRequest, api_key: str) -> ImageSubmission:
        payload = {
            "model": resolve_image_model(params.model),
            "prompt": params.prompt,
            "n": max(1, min(params.num_images or 1, MAX_IMAGES)),
            "size": IMAGE_SIZES.get(params.aspect_ratio or "1:1", "1024x1024"),
            "response_format": "url",
        }

        result = self._request("POST", "/images/generations", api_key, json=payload)

        items = []
        data = result.get("data") if isinstance(result, dict) else None
        for entry in data or []:
            if not isinstance(entry, dict):
                continue
            url = entry.get("url") or entry.get("image_url") or entry.get("image")
            b64 = entry.get("b64_json") or entry.get("base64") or entry.get("image_base64")
            if url:
                items.append({"url": url})
            elif b64:
                items.append({"b64": b64})
            else:
                logger.warning("image_entry_without_payload", keys=sorted(entry.keys()))

        return ImageSubmission(items=items, raw=result)

    def submit_video_job(self, params: VideoJobRequest, api_key: str) -> VideoSubmission:
        size = "720x1280" if (params.aspect_ratio or "16:9") == "9:16" else "1280x720"
        fields = {
            "model": params.model or DEFAULT_VIDEO_MODEL,
            "prompt": build_video_prompt(params),
            "seconds": VIDEO_SECONDS,
            "size": size,
            "watermark": "false",
        }
        # (None, value) tuples force multipart encoding for plain fields
        files = {name: (None, value) for name, value in fields.items()}
        reference = params.reference_image
        if reference:
            files["input_reference"] = ("input_reference.png", reference, "image/png")

        result = self._request_with_fallback("POST", VIDEO_SUBMIT_PATHS, api_key, files=files)
        if not isinstance(result, dict):
            raise ApiRequestError("Unexpected response from video submission", payload=result)

        task_id = result.get("id") or result.get("task_id")
        if not task_id:
            raise ApiRequestError(
                extract_error_message(result) or "Video submission returned no task id",
                payload=result,
            )

        return VideoSubmission(
            task_id=str(task_id),
            status=str(result.get("status") or "processing"),
            progress=parse_progress(result.get("progress")),
            raw=result,
        )

    def query_status(self, task_id: str, api_key: str) -> StatusResult:
        encoded = quote(str(task_id), safe="")
        paths = [p.format(task_id=encoded) for p in VIDEO_STATUS_PATHS]
        result = self._request_with_fallback("GET", paths, api_key)
        if not isinstance(result, dict):
            raise ApiRequestError("Unexpected response from status query", payload=result)

        result_url = result.get("video_url") or result.get("url") or result.get("output_url")
        progress = parse_progress(result.get("progress"))
        status = self.vocabulary.resolve(result.get("status"), progress, result_url)

        return StatusResult(
            status=status,
            progress=progress,
            result_url=result_url,
            error=extract_error_message(result),
            raw=result,
        )
