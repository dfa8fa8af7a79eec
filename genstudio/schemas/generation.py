import base64
import binascii
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator


class GenerationRecord(BaseModel):
    id: str
    type: str
    prompt: str = ""
    system_context: Optional[str] = None
    storyboard: Optional[str] = None
    negative_prompt: Optional[str] = None
    model: Optional[str] = None
    aspect_ratio: Optional[str] = None
    duration: Optional[int] = None
    status: str
    progress: int = 0
    task_id: Optional[str] = None
    result_path: Optional[str] = None
    result_url: Optional[str] = None
    raw_api_response: Optional[Any] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ImageJobRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    negative_prompt: Optional[str] = None
    aspect_ratio: Optional[str] = "1:1"
    num_images: int = 1
    model: Optional[str] = None


class VideoJobRequest(BaseModel):
    prompt: str = ""
    system_context: Optional[str] = None
    storyboard: Optional[str] = None
    negative_prompt: Optional[str] = None
    aspect_ratio: Optional[str] = "16:9"
    duration: Optional[int] = None
    model: Optional[str] = None
    reference_image_b64: Optional[str] = None

    @field_validator("reference_image_b64")
    @classmethod
    def _valid_base64(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("reference_image_b64 is not valid base64")
        return value

    @property
    def reference_image(self) -> Optional[bytes]:
        if not self.reference_image_b64:
            return None
        return base64.b64decode(self.reference_image_b64)

    def has_content(self) -> bool:
        return any((self.prompt.strip(), self.system_context, self.storyboard))


class ImageJobResponse(BaseModel):
    id: str
    status: str
    images: List[str] = []


class VideoJobResponse(BaseModel):
    id: str
    task_id: str
    status: str


class StatusSnapshot(BaseModel):
    """What a single status check observed."""
    status: str
    progress: Optional[int] = None
    result_url: Optional[str] = None
    local_path: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


class PollerInfo(BaseModel):
    task_id: str
    attempts: int
    started_at: datetime
    last_status: Optional[str] = None


class ResumeResponse(BaseModel):
    resumed: List[str]
    active: int
