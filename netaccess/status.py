from datetime import datetime, timedelta
from typing import Optional

from netaccess.models import PortalStatus, Session, SessionState
from netaccess.session import SessionMachine


def format_duration(duration: timedelta) -> str:
    total_minutes = int(duration.total_seconds() // 60)
    days, remainder = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(remainder, 60)
    fragments = []
    for value, unit in ((days, "days"), (hours, "hours"), (minutes, "minutes")):
        if value > 0:
            fragments.append(f"{value} {unit}")
    return ", ".join(fragments) or "less than a minute"


def describe(session: Session) -> str:
    since = f"{session.changed_at:%Y-%m-%d %H:%M:%S}"
    if session.state == SessionState.LOGGED_IN:
        return f"Logged in at {session.address} since {since}"
    if session.state == SessionState.AUTHENTICATING:
        target = f" {session.address}" if session.address else ""
        return f"Authenticating{target} since {since}"
    if session.state == SessionState.FAILED:
        return f"Failed since {since}: {session.last_error}"
    return f"Logged out since {since}"


def render_portal_status(
    status: PortalStatus, address: str, now: Optional[datetime] = None
) -> list[str]:
    connection = status.system_connection(address)
    if connection.is_active(now):
        state = f"active for {format_duration(connection.time_left(now))}"
    else:
        state = "inactive"
    lines = [f"Your IP address is {address} and {state}"]

    others = status.others(address)
    lines.append(f"Number of other registered connections: {len(others)}")
    if others:
        lines.append("S.No.\tIP\t\tTime left")
    for index, other in enumerate(others, start=1):
        left = (
            format_duration(other.time_left(now))
            if other.is_active(now)
            else "Inactive or expired"
        )
        lines.append(f"{index}\t{other.address}\t{left}")
    return lines


class StatusReporter:
    """Read handle on a SessionMachine; never mutates the session."""

    def __init__(self, machine: SessionMachine) -> None:
        self._machine = machine

    def current(self) -> Session:
        return self._machine.snapshot()

    def summary(self) -> str:
        return describe(self.current())
