"""
Entity Directory

Resolves which billing entity pays for a usage occurrence. The organization
that owns an interview pays when there is one, otherwise its user does.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional
import threading
import structlog

from ..errors import NotFoundError, ValidationError
from ..persistence.models import EntityType

logger = structlog.get_logger()


@dataclass(frozen=True)
class EntityRef:
    """A billing entity."""
    entity_type: EntityType
    entity_id: str


class EntityDirectory(ABC):
    """Looks up the payer for an interview."""

    @abstractmethod
    async def get_entity_role(self, interview_id: str) -> EntityRef:
        """Return the paying entity, or raise NotFoundError."""


class InMemoryEntityDirectory(EntityDirectory):
    """Directory backed by a dict. Used in tests and single-process deployments."""

    def __init__(self):
        self._interviews: Dict[str, EntityRef] = {}
        self._lock = threading.Lock()

    def register(
        self,
        interview_id: str,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> EntityRef:
        """Register an interview's owner. The organization takes precedence."""
        if organization_id:
            ref = EntityRef(EntityType.ORGANIZATION, organization_id)
        elif user_id:
            ref = EntityRef(EntityType.USER, user_id)
        else:
            raise ValidationError(f"Interview {interview_id} needs a user or an organization")

        with self._lock:
            self._interviews[interview_id] = ref

        logger.debug(
            "interview_registered",
            interview_id=interview_id,
            entity_type=ref.entity_type.value,
            entity_id=ref.entity_id,
        )
        return ref

    async def get_entity_role(self, interview_id: str) -> EntityRef:
        with self._lock:
            ref = self._interviews.get(interview_id)
        if ref is None:
            raise NotFoundError(f"No billing entity for interview {interview_id}")
        return ref
