"""
Generation Record Store

Typed CRUD over generation records, the single source of truth for task
state. Writes are serialized by one lock so the status comparison that
decides whether a completion event fires happens in the same transaction
as the update itself.
"""
import threading
import uuid
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from ..logging_config import db_logger
from ..models.generation import (
    Generation,
    GenerationStatus,
    GenerationType,
    TERMINAL_STATUSES,
    utcnow,
)
from ..notifications import CompletionEvent, NotificationChannel
from ..schemas.generation import GenerationRecord

CREATE_FIELDS = frozenset({
    "type",
    "prompt",
    "system_context",
    "storyboard",
    "negative_prompt",
    "model",
    "aspect_ratio",
    "duration",
})

UPDATE_FIELDS = frozenset({
    "status",
    "progress",
    "task_id",
    "result_path",
    "result_url",
    "raw_api_response",
    "error_message",
})

TERMINAL_VALUES = frozenset(s.value for s in TERMINAL_STATUSES)


def clamp_progress(value) -> int:
    return max(0, min(100, int(value)))


class GenerationStore:
    """Record store adapter backed by SQLAlchemy."""

    def __init__(self, session_factory: sessionmaker, channel: Optional[NotificationChannel] = None):
        self._session_factory = session_factory
        self.channel = channel
        self._lock = threading.RLock()

    # ============================================================
    # WRITES
    # ============================================================

    def create(self, params: Dict) -> str:
        """Insert a new record in ``processing`` state and return its id."""
        unknown = set(params) - CREATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown generation fields: {sorted(unknown)}")

        kind = GenerationType(params.get("type"))
        now = utcnow()
        row = Generation(
            id=str(uuid.uuid4()),
            type=kind.value,
            prompt=params.get("prompt") or "",
            system_context=params.get("system_context") or None,
            storyboard=params.get("storyboard") or None,
            negative_prompt=params.get("negative_prompt") or None,
            model=params.get("model") or None,
            aspect_ratio=params.get("aspect_ratio") or None,
            duration=params.get("duration") or None,
            status=GenerationStatus.PROCESSING.value,
            progress=0,
            created_at=now,
            updated_at=now,
        )

        with self._lock, self._session_factory() as db:
            db.add(row)
            db.commit()

        db_logger.info("generation_created", generation_id=row.id, type=row.type)
        return row.id

    def update_by_id(self, generation_id: str, **patch) -> bool:
        """Apply a partial update. Returns False when the record does not exist."""
        self._check_patch(patch)
        with self._lock, self._session_factory() as db:
            row = db.get(Generation, generation_id)
            return self._commit_update(db, row, patch)

    def update_by_task_id(self, task_id: str, **patch) -> bool:
        """Apply a partial update to the most recent record owning ``task_id``."""
        self._check_patch(patch)
        if not task_id:
            return False
        with self._lock, self._session_factory() as db:
            row = self._latest_for_task(db, task_id)
            return self._commit_update(db, row, patch)

    def _check_patch(self, patch: Dict) -> None:
        unknown = set(patch) - UPDATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown update fields: {sorted(unknown)}")

    def _commit_update(self, db: Session, row: Optional[Generation], patch: Dict) -> bool:
        if row is None:
            return False

        event = self._apply(row, dict(patch))
        db.commit()

        if event is not None:
            db_logger.info("generation_completed", generation_id=row.id, type=row.type)
            if self.channel is not None:
                self.channel.publish(event)
        return True

    def _apply(self, row: Generation, patch: Dict) -> Optional[CompletionEvent]:
        previous = row.status

        if patch.get("status") is not None:
            patch["status"] = GenerationStatus(patch["status"]).value
            if previous in TERMINAL_VALUES and patch["status"] not in TERMINAL_VALUES:
                # Terminal states are absorbing; a late in-progress snapshot loses.
                db_logger.debug(
                    "regressive_status_dropped",
                    generation_id=row.id,
                    current=previous,
                    attempted=patch["status"],
                )
                patch.pop("status")
                patch.pop("progress", None)

        if patch.get("progress") is not None:
            patch["progress"] = clamp_progress(patch["progress"])

        for key, value in patch.items():
            setattr(row, key, value)
        row.updated_at = utcnow()

        if row.status == GenerationStatus.COMPLETED.value and previous != GenerationStatus.COMPLETED.value:
            return CompletionEvent(id=row.id, type=row.type, prompt=row.prompt or "")
        return None

    # ============================================================
    # READS
    # ============================================================

    def _latest_for_task(self, db: Session, task_id: str) -> Optional[Generation]:
        return (
            db.query(Generation)
            .filter(Generation.task_id == task_id)
            .order_by(Generation.created_at.desc(), Generation.updated_at.desc())
            .first()
        )

    def get_by_id(self, generation_id: str) -> Optional[GenerationRecord]:
        with self._session_factory() as db:
            row = db.get(Generation, generation_id)
            return GenerationRecord.model_validate(row) if row else None

    def get_by_task_id(self, task_id: str) -> Optional[GenerationRecord]:
        if not task_id:
            return None
        with self._session_factory() as db:
            row = self._latest_for_task(db, task_id)
            return GenerationRecord.model_validate(row) if row else None

    def list_non_terminal(self, limit: int = 100) -> List[GenerationRecord]:
        with self._session_factory() as db:
            rows = (
                db.query(Generation)
                .filter(Generation.status.notin_(TERMINAL_VALUES))
                .order_by(Generation.created_at.desc())
                .limit(limit)
                .all()
            )
            return [GenerationRecord.model_validate(row) for row in rows]

    def list_pending_task_ids(self, limit: int = 500) -> List[str]:
        """Task ids of in-flight video jobs, most recent first.

        A task id is pending only if its most recent owner is non-terminal.
        """
        task_ids: List[str] = []
        seen = set()
        with self._session_factory() as db:
            rows = (
                db.query(Generation.task_id, Generation.status)
                .filter(
                    Generation.type == GenerationType.VIDEO.value,
                    Generation.task_id.isnot(None),
                    Generation.task_id != "",
                )
                .order_by(Generation.created_at.desc())
            )
            for task_id, status in rows:
                if task_id in seen:
                    continue
                seen.add(task_id)
                if status not in TERMINAL_VALUES:
                    task_ids.append(task_id)
                    if len(task_ids) >= limit:
                        break
        return task_ids

    def list(
        self,
        type: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[GenerationRecord], int]:
        """History listing, newest first."""
        page = max(page, 1)
        with self._session_factory() as db:
            query = db.query(Generation)
            if type:
                query = query.filter(Generation.type == type)
            if status:
                query = query.filter(Generation.status == status)
            if search:
                query = query.filter(Generation.prompt.contains(search))

            total = query.count()
            rows = (
                query.order_by(Generation.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return [GenerationRecord.model_validate(row) for row in rows], total

    def stats(self) -> Dict[str, int]:
        with self._session_factory() as db:
            by_type = dict(
                db.query(Generation.type, func.count(Generation.id)).group_by(Generation.type).all()
            )
            by_status = dict(
                db.query(Generation.status, func.count(Generation.id)).group_by(Generation.status).all()
            )
        in_flight = sum(count for status, count in by_status.items() if status not in TERMINAL_VALUES)
        return {
            "total_videos": by_type.get(GenerationType.VIDEO.value, 0),
            "total_images": by_type.get(GenerationType.IMAGE.value, 0),
            "completed": by_status.get(GenerationStatus.COMPLETED.value, 0),
            "failed": by_status.get(GenerationStatus.FAILED.value, 0),
            "in_flight": in_flight,
        }
