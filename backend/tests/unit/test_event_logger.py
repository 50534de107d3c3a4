"""
Unit tests for ProcessingEventLogger
"""
import uuid
from unittest.mock import Mock

import pytest

from backend.core.database import session_scope
from backend.core.database.repository import ProcessingLogRepository
from backend.core.email.event_logger import AgentState, ProcessingEventLogger
from backend.core.errors import ActionExecutionError, TokenExpiredError
from backend.tests.fakes import T0


@pytest.fixture
def run_id(session_factory):
    with session_scope(session_factory) as db:
        return ProcessingLogRepository(db).start_run("user-1").id


def stored_events(session_factory, run_id):
    with session_scope(session_factory) as db:
        return [(e.event_type, e.agent_state, e.details, e.email_id) for e in ProcessingLogRepository(db).list_events(run_id)]


class TestProcessingEventLogger:

    def test_events_are_appended(self, session_factory, run_id):
        events = ProcessingEventLogger(session_factory, run_id)
        email_id = uuid.uuid4()

        assert events.info(AgentState.FETCHING, "Fetching 3 emails", {"count": 3}).ok
        assert events.analysis(AgentState.DECIDED, email_id, {"category": "client"}).ok
        assert events.action(AgentState.ACTING, email_id, "archive", reason="Rule 1").ok

        assert stored_events(session_factory, run_id) == [
            ("info", "Fetching", {"message": "Fetching 3 emails", "count": 3}, None),
            ("analysis", "Decided", {"category": "client"}, email_id),
            ("action", "Acting", {"action": "archive", "reason": "Rule 1"}, email_id),
        ]

    def test_error_details(self, session_factory, run_id):
        events = ProcessingEventLogger(session_factory, run_id)

        events.error(AgentState.ERROR, ActionExecutionError("HTTP 404 from provider", action="trash", message_id="m1"))
        events.error(AgentState.ERROR, ValueError("plain failure"))
        events.error(AgentState.ERROR, TokenExpiredError("invalid_grant"))

        details = [e[2]["error"] for e in stored_events(session_factory, run_id)]
        assert details == [
            "HTTP 404 from provider",
            "plain failure",
            "Session expired. Please reconnect your account in Settings.",
        ]

    def test_details_are_made_json_safe(self, session_factory, run_id):
        marker = uuid.uuid4()
        ProcessingEventLogger(session_factory, run_id).log("info", AgentState.COMPLETED, {
            "at": T0, "ids": (marker,), "nested": {"n": 1},
        })

        details = stored_events(session_factory, run_id)[0][2]
        assert details == {"at": str(T0), "ids": [str(marker)], "nested": {"n": 1}}

    def test_write_failure_is_reported_not_raised(self):
        events = ProcessingEventLogger(Mock(side_effect=RuntimeError("database is locked")), uuid.uuid4())

        result = events.info(AgentState.FETCHING, "hello")

        assert result.ok is False
        assert "database is locked" in result.error
