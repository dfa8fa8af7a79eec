"""
Generation model for image/video job persistence.
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text

from ..database import Base


class GenerationType(str, enum.Enum):
    IMAGE = "image"
    VIDEO = "video"


class GenerationStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({GenerationStatus.COMPLETED, GenerationStatus.FAILED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Generation(Base):
    __tablename__ = "generations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    type = Column(String(10), nullable=False, index=True)  # image, video
    prompt = Column(Text, nullable=False, default="")
    system_context = Column(Text, nullable=True)
    storyboard = Column(Text, nullable=True)
    negative_prompt = Column(Text, nullable=True)
    model = Column(String(100), nullable=True)
    aspect_ratio = Column(String(20), nullable=True)
    duration = Column(Integer, nullable=True)
    status = Column(String(20), default=GenerationStatus.PENDING.value, index=True)  # pending, processing, completed, failed
    progress = Column(Integer, default=0)  # 0-100
    task_id = Column(String(100), nullable=True, index=True)
    result_path = Column(String(1000), nullable=True)
    result_url = Column(String(2000), nullable=True)
    raw_api_response = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow)
