"""
Tests for the scheduled psychometric audit cron script.
"""
import json
import sys
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.orm import sessionmaker

import run_psychometric_audit as audit_script
from psychometrics.core.config import settings
from psychometrics.core.datetime_utils import utc_now
from psychometrics.models.models import AuditRun, AuditRunStatus, AuditTrigger


@pytest.fixture(autouse=True)
def keep_test_logging():
    """Leave pytest's log handlers in place; main() would reconfigure them."""
    with patch("psychometrics.core.logging_config.setup_logging") as mock_setup:
        yield mock_setup


@pytest.fixture
def session_factory(db_session):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_session.get_bind())


def _heartbeat(capsys):
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
    heartbeat = json.loads(lines[-1])
    assert heartbeat["type"] == "HEARTBEAT"
    assert heartbeat["service"] == "psychometric_audit_cron"
    return heartbeat


def _completed_run(db_session, hours_ago):
    completed_at = utc_now() - timedelta(hours=hours_ago)
    run = AuditRun(
        trigger=AuditTrigger.SCHEDULED,
        status=AuditRunStatus.COMPLETED,
        started_at=completed_at,
        completed_at=completed_at,
    )
    db_session.add(run)
    db_session.commit()
    return run


class TestMain:
    """Tests for the cron entry point."""

    def test_runs_when_no_previous_audit(self, db_session, session_factory, seed, capsys):
        item = seed.item(seed.competency())
        seed.responses(item, [float(i % 2) for i in range(60)])

        assert audit_script.main([], session_factory=session_factory) == 0

        heartbeat = _heartbeat(capsys)
        assert heartbeat["status"] == "completed"
        assert heartbeat["items_initialized"] == 1
        assert heartbeat["items_recalculated"] == 1
        assert heartbeat["traits_recalculated"] == 5
        assert heartbeat["failures"] == 0

        run = db_session.get(AuditRun, heartbeat["audit_run_id"])
        assert run.trigger == AuditTrigger.SCHEDULED

    def test_skips_when_not_due(
        self, db_session, session_factory, capsys, keep_test_logging
    ):
        _completed_run(db_session, hours_ago=1)

        assert audit_script.main([], session_factory=session_factory) == 0

        heartbeat = _heartbeat(capsys)
        assert heartbeat["status"] == "skipped"
        assert heartbeat["reason"] == "not_due"
        assert db_session.query(AuditRun).count() == 1
        keep_test_logging.assert_called_once()

    def test_force_ignores_interval(self, db_session, session_factory, capsys):
        _completed_run(db_session, hours_ago=1)

        assert audit_script.main(["--force"], session_factory=session_factory) == 0

        heartbeat = _heartbeat(capsys)
        assert heartbeat["status"] == "completed"
        run = db_session.get(AuditRun, heartbeat["audit_run_id"])
        assert run.trigger == AuditTrigger.MANUAL

    def test_runs_when_due(self, db_session, session_factory, capsys):
        _completed_run(db_session, hours_ago=settings.AUDIT_INTERVAL_HOURS + 1)

        assert audit_script.main([], session_factory=session_factory) == 0
        assert _heartbeat(capsys)["status"] == "completed"

    def test_disabled(self, session_factory, capsys, monkeypatch):
        monkeypatch.setattr(settings, "PSYCHOMETRICS_ENABLED", False)

        assert audit_script.main([], session_factory=session_factory) == 0

        heartbeat = _heartbeat(capsys)
        assert heartbeat["status"] == "skipped"
        assert heartbeat["reason"] == "disabled"

    def test_session_failure_exits_1(self):
        def broken_factory():
            raise RuntimeError("connection refused")

        assert audit_script.main([], session_factory=broken_factory) == 1

    def test_audit_failure_exits_2(self, session_factory, capsys):
        with patch(
            "psychometrics.core.audit.run_psychometric_audit",
            side_effect=RuntimeError("boom"),
        ):
            assert audit_script.main(["--force"], session_factory=session_factory) == 2

        heartbeat = _heartbeat(capsys)
        assert heartbeat["status"] == "failed"
        assert heartbeat["error"] == "boom"

    def test_import_failure_exits_3(self):
        with patch.dict(sys.modules, {"psychometrics.core.audit": None}):
            assert audit_script.main([]) == 3
