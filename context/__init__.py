"""Context Module - ephemeral context cache, readiness tracking, service facade."""

from .readiness import readiness_summary, required_parts
from .service import ContextService, create_context_service
from .status import StatusBoard
from .store import EphemeralContextStore

__all__ = [
    "ContextService",
    "EphemeralContextStore",
    "StatusBoard",
    "create_context_service",
    "readiness_summary",
    "required_parts",
]
