"""
Processing event trail.

Events are a user-facing trace of what a sync run did with each message. Writing
them is best-effort: every write uses its own short-lived session and reports
failure through EventWriteResult instead of raising.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

from backend.core.database import session_scope
from backend.core.database.repository import ProcessingLogRepository


logger = logging.getLogger(__name__)


class AgentState:
    FETCHING = "Fetching"
    ANALYZING = "Analyzing"
    DECIDED = "Decided"
    ACTING = "Acting"
    COMPLETED = "Completed"
    SKIPPED = "Skipped"
    ERROR = "Error"


@dataclass
class EventWriteResult:
    ok: bool
    error: Optional[str] = None


class ProcessingEventLogger:
    """Appends ProcessingEvents for one run."""

    def __init__(self, session_factory, run_id):
        self.session_factory = session_factory
        self.run_id = run_id

    def log(
        self,
        event_type: str,
        agent_state: str,
        details: Optional[Dict[str, Any]] = None,
        email_id=None,
    ) -> EventWriteResult:
        try:
            with session_scope(self.session_factory) as db:
                ProcessingLogRepository(db).add_event(
                    self.run_id,
                    event_type=event_type,
                    agent_state=agent_state,
                    details=_json_safe(details or {}),
                    email_id=email_id,
                )
            return EventWriteResult(ok=True)
        except Exception as e:
            logger.warning(f"Failed to write processing event ({event_type}/{agent_state}): {e}")
            return EventWriteResult(ok=False, error=str(e))

    def info(self, agent_state: str, message: str, details: Optional[Dict[str, Any]] = None, email_id=None) -> EventWriteResult:
        return self.log("info", agent_state, {"message": message, **(details or {})}, email_id)

    def analysis(self, agent_state: str, email_id, analysis: Dict[str, Any]) -> EventWriteResult:
        return self.log("analysis", agent_state, analysis, email_id)

    def action(self, agent_state: str, email_id, action: str, reason: Optional[str] = None) -> EventWriteResult:
        return self.log("action", agent_state, {"action": action, "reason": reason}, email_id)

    def error(self, agent_state: str, error, email_id=None) -> EventWriteResult:
        message = getattr(error, "user_message", None) or str(error)
        return self.log("error", agent_state, {"error": message}, email_id)


def _json_safe(value):
    """Coerce datetimes/UUIDs/enums in event details to strings for the JSON column."""
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
