from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional

from netaccess.errors import (
    CredentialError,
    NetAccessError,
    NetworkError,
    ProtocolError,
    SessionStateError,
)

PORTAL_TZ = timezone(timedelta(hours=5, minutes=30), "IST")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Credentials:
    __slots__ = ("username", "_password")

    def __init__(self, username: str, password: str) -> None:
        self.username = username
        self._password = password

    @property
    def password(self) -> str:
        return self._password

    @property
    def discarded(self) -> bool:
        return not self._password

    def discard(self) -> None:
        self._password = ""

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


class PortalOutcome(Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    # Portal was already in the requested state: an active approval on login,
    # nothing to revoke on logout.
    ALREADY_LOGGED_IN = "already_logged_in"
    NETWORK_UNREACHABLE = "network_unreachable"
    UNEXPECTED_RESPONSE = "unexpected_response"


@dataclass(frozen=True)
class Connection:
    address: str
    valid_till: datetime
    active: bool

    def time_left(self, now: Optional[datetime] = None) -> timedelta:
        now = now or datetime.now(PORTAL_TZ)
        remaining = self.valid_till - now
        if remaining < timedelta(0):
            return timedelta(0)
        return remaining

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.active and self.time_left(now) > timedelta(0)


@dataclass(frozen=True)
class PortalStatus:
    connections: Dict[str, Connection] = field(default_factory=dict)

    def get(self, address: str) -> Optional[Connection]:
        return self.connections.get(address)

    def is_active(self, address: str, now: Optional[datetime] = None) -> bool:
        connection = self.connections.get(address)
        return connection is not None and connection.is_active(now)

    def system_connection(self, address: str) -> Connection:
        connection = self.connections.get(address)
        if connection is None:
            return Connection(address=address, valid_till=datetime.now(PORTAL_TZ), active=False)
        return connection

    def others(self, address: str) -> list[Connection]:
        return [conn for ip, conn in self.connections.items() if ip != address]

    def active_addresses(self, now: Optional[datetime] = None) -> list[str]:
        return [ip for ip, conn in self.connections.items() if conn.is_active(now)]


@dataclass(frozen=True)
class PortalResult:
    outcome: PortalOutcome
    address: Optional[str] = None
    detail: str = ""
    status: Optional[PortalStatus] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (PortalOutcome.SUCCESS, PortalOutcome.ALREADY_LOGGED_IN)

    @property
    def retryable(self) -> bool:
        return self.outcome in (
            PortalOutcome.NETWORK_UNREACHABLE,
            PortalOutcome.UNEXPECTED_RESPONSE,
        )

    def describe(self) -> str:
        if self.detail:
            return f"{self.outcome.value}: {self.detail}"
        return self.outcome.value

    def error(self) -> Optional[NetAccessError]:
        if self.outcome == PortalOutcome.INVALID_CREDENTIALS:
            return CredentialError(self.detail or "Invalid user credentials")
        if self.outcome == PortalOutcome.NETWORK_UNREACHABLE:
            return NetworkError(self.detail or "Portal unreachable")
        if self.outcome == PortalOutcome.UNEXPECTED_RESPONSE:
            return ProtocolError("Unexpected portal response", raw=self.detail)
        return None


@dataclass(frozen=True)
class AddressObservation:
    address: str
    observed_at: datetime = field(default_factory=utcnow)


class SessionState(Enum):
    LOGGED_OUT = "logged_out"
    AUTHENTICATING = "authenticating"
    LOGGED_IN = "logged_in"
    FAILED = "failed"


@dataclass(frozen=True)
class Session:
    state: SessionState = SessionState.LOGGED_OUT
    address: Optional[str] = None
    changed_at: datetime = field(default_factory=utcnow)
    last_error: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.state, SessionState):
            raise SessionStateError(f"Unknown session state {self.state!r}")
        if self.state == SessionState.LOGGED_IN and not self.address:
            raise SessionStateError("Logged in session without an address")
        if self.state == SessionState.FAILED and not self.last_error:
            raise SessionStateError("Failed session without an error")
        if self.state != SessionState.FAILED and self.last_error is not None:
            raise SessionStateError(f"Error recorded on {self.state.value} session")
        if self.state in (SessionState.LOGGED_OUT, SessionState.FAILED) and self.address:
            raise SessionStateError(f"Address recorded on {self.state.value} session")

    def moved_to(
        self,
        state: SessionState,
        at: datetime,
        address: Optional[str] = None,
        error: Optional[str] = None,
    ) -> "Session":
        return replace(self, state=state, address=address, changed_at=at, last_error=error)


@dataclass(frozen=True)
class SessionEvent:
    previous: SessionState
    session: Session
    reason: str
    result: Optional[PortalResult] = None

    @property
    def state(self) -> SessionState:
        return self.session.state
