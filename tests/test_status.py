from datetime import datetime, timedelta, timezone

from netaccess.models import PORTAL_TZ, Connection, PortalStatus, Session, SessionState
from netaccess.session import SessionMachine
from netaccess.status import StatusReporter, describe, format_duration, render_portal_status

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=PORTAL_TZ)


def test_format_duration():
    assert format_duration(timedelta(days=2, hours=3, minutes=4)) == "2 days, 3 hours, 4 minutes"
    assert format_duration(timedelta(hours=5)) == "5 hours"
    assert format_duration(timedelta(seconds=30)) == "less than a minute"


def test_describe_states():
    at = datetime(2024, 3, 1, 6, 30, tzinfo=timezone.utc)
    assert describe(Session(SessionState.LOGGED_IN, "10.0.0.5", at)).startswith(
        "Logged in at 10.0.0.5"
    )
    assert "boom" in describe(Session(SessionState.FAILED, None, at, "boom"))
    assert describe(Session(SessionState.LOGGED_OUT, None, at)).startswith("Logged out")
    assert describe(Session(SessionState.AUTHENTICATING, "10.0.0.9", at)).startswith(
        "Authenticating 10.0.0.9"
    )


def test_render_portal_status_lists_other_connections():
    status = PortalStatus(
        {
            "10.0.0.5": Connection("10.0.0.5", NOW + timedelta(hours=20, minutes=5), True),
            "10.0.0.9": Connection("10.0.0.9", NOW - timedelta(hours=1), True),
        }
    )

    lines = render_portal_status(status, "10.0.0.5", now=NOW)

    assert lines[0] == "Your IP address is 10.0.0.5 and active for 20 hours, 5 minutes"
    assert lines[1] == "Number of other registered connections: 1"
    assert lines[3] == "1\t10.0.0.9\tInactive or expired"


def test_render_unknown_address_is_inactive():
    lines = render_portal_status(PortalStatus(), "10.0.0.5", now=NOW)
    assert lines == [
        "Your IP address is 10.0.0.5 and inactive",
        "Number of other registered connections: 0",
    ]


def test_reporter_reads_current_snapshot(fake_client, credentials):
    machine = SessionMachine(fake_client)
    reporter = StatusReporter(machine)
    assert reporter.current().state == SessionState.LOGGED_OUT

    machine.login(credentials, "10.0.0.5")

    assert reporter.current() == machine.snapshot()
    assert reporter.summary().startswith("Logged in at 10.0.0.5")
