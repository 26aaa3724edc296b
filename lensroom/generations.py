# lensroom/generations.py

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from lensroom.entities import Generation
from lensroom.errors import GenerationStateError

logger = logging.getLogger("lensroom_infer")

_OPEN_STATUSES = ("pending", "processing")


@dataclass(frozen=True)
class GenerationView:
    id: str
    user_id: str
    type: str
    model: str
    prompt: Optional[str]
    status: str
    result_urls: List[str] = field(default_factory=list)
    credits_used: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Generation) -> "GenerationView":
        return cls(
            id=row.id,
            user_id=row.user_id,
            type=row.type,
            model=row.model,
            prompt=row.prompt,
            status=row.status,
            result_urls=list(row.result_urls or []),
            credits_used=int(row.credits_used or 0),
            metadata=dict(row.metadata_json or {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "model": self.model,
            "prompt": self.prompt,
            "status": self.status,
            "resultUrls": list(self.result_urls),
            "creditsUsed": self.credits_used,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class GenerationStore:
    """
    Durable attempt records. Status only moves forward:
    processing -> success | failed, and terminal rows are never rewritten.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def create(
        self,
        identity: str,
        generation_id: str,
        kind: str,
        model: str,
        prompt: str,
        credits_used: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GenerationView:
        session = self.session_factory()
        try:
            row = Generation(
                id=str(generation_id),
                user_id=str(identity),
                type=kind,
                model=model,
                prompt=prompt,
                status="processing",
                result_urls=[],
                credits_used=int(credits_used),
                metadata_json=dict(metadata or {}),
            )
            session.add(row)
            session.commit()
            return GenerationView.from_row(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def mark_success(self, generation_id: str, result_urls: List[str], metadata: Optional[Dict[str, Any]] = None) -> None:
        self._finalize(
            generation_id,
            status="success",
            result_urls=list(result_urls),
            metadata_update=dict(metadata or {}),
        )

    def mark_failed(self, generation_id: str, error_message: str) -> None:
        self._finalize(
            generation_id,
            status="failed",
            result_urls=None,
            metadata_update={"error": error_message},
        )

    def get(self, generation_id: str) -> Optional[GenerationView]:
        session = self.session_factory()
        try:
            row = session.get(Generation, str(generation_id))
            return GenerationView.from_row(row) if row is not None else None
        finally:
            session.close()

    def list_for_user(self, identity: str, limit: int = 20) -> List[GenerationView]:
        session = self.session_factory()
        try:
            rows = session.execute(
                select(Generation)
                .where(Generation.user_id == str(identity))
                .order_by(Generation.created_at.desc())
                .limit(int(limit))
            ).scalars().all()
            return [GenerationView.from_row(r) for r in rows]
        finally:
            session.close()

    def _finalize(
        self,
        generation_id: str,
        *,
        status: str,
        result_urls: Optional[List[str]],
        metadata_update: Dict[str, Any],
    ) -> None:
        session = self.session_factory()
        try:
            row = session.execute(
                select(Generation).where(Generation.id == str(generation_id)).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                raise GenerationStateError(f"Generation not found: {generation_id}")

            values: Dict[Any, Any] = {
                Generation.status: status,
                Generation.metadata_json: {**dict(row.metadata_json or {}), **metadata_update},
                Generation.updated_at: datetime.now(timezone.utc),
            }
            if result_urls is not None:
                values[Generation.result_urls] = result_urls

            # conditional on the row still being open: a terminal row is never revisited
            result = session.execute(
                update(Generation)
                .where(Generation.id == str(generation_id), Generation.status.in_(_OPEN_STATUSES))
                .values(values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise GenerationStateError(
                    f"Generation {generation_id} is already {row.status}; refusing transition to {status}"
                )
            session.commit()
            logger.debug("[Generations] %s -> %s", generation_id, status)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
