import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from netaccess.errors import SessionStateError
from netaccess.models import (
    AddressObservation,
    Credentials,
    PortalOutcome,
    PortalResult,
    Session,
    SessionEvent,
    SessionState,
    utcnow,
)
from netaccess.portal import PortalClient

logger = logging.getLogger("netaccess.session")

Listener = Callable[[SessionEvent], None]

ALLOWED_TRANSITIONS = {
    SessionState.LOGGED_OUT: {SessionState.LOGGED_IN, SessionState.FAILED},
    SessionState.AUTHENTICATING: {
        SessionState.LOGGED_IN,
        SessionState.FAILED,
        SessionState.LOGGED_OUT,
    },
    SessionState.LOGGED_IN: {SessionState.AUTHENTICATING, SessionState.LOGGED_OUT},
    SessionState.FAILED: {SessionState.AUTHENTICATING, SessionState.LOGGED_OUT},
}


@dataclass
class Attempt:
    result: PortalResult
    events: list[SessionEvent] = field(default_factory=list)

    @property
    def session(self) -> Optional[Session]:
        if not self.events:
            return None
        return self.events[-1].session


class SessionMachine:
    """Owns the single Session value and every portal call made for it.

    ``_gate`` is held for the whole of an attempt so portal calls never
    overlap; ``_lock`` only guards the swap of the immutable Session, so
    readers get a consistent snapshot without waiting on network I/O.
    """

    def __init__(self, client: PortalClient, clock=utcnow) -> None:
        self._client = client
        self._clock = clock
        self._session = Session(changed_at=clock())
        self._lock = threading.Lock()
        self._gate = threading.Lock()
        self._listeners: list[Listener] = []

    def snapshot(self) -> Session:
        with self._lock:
            return self._session

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def needs_reauthorization(self, observation: AddressObservation) -> bool:
        session = self.snapshot()
        return session.state != SessionState.LOGGED_IN or session.address != observation.address

    def login(
        self,
        credentials: Credentials,
        address: str,
        force: bool = False,
        reason: str = "login requested",
    ) -> Attempt:
        with self._gate:
            events: list[SessionEvent] = []
            state = self.snapshot().state
            if state == SessionState.AUTHENTICATING:
                raise SessionStateError("Authentication started outside the gate")
            if state != SessionState.LOGGED_OUT:
                events.append(self._transition(SessionState.AUTHENTICATING, reason, address=address))

            try:
                result = self._client.login(credentials, address, force=force)
            except Exception as exc:
                self._transition(
                    SessionState.FAILED, reason, error=f"{type(exc).__name__}: {exc}"
                )
                raise
            if result.ok:
                events.append(
                    self._transition(SessionState.LOGGED_IN, reason, address=address, result=result)
                )
            else:
                events.append(
                    self._transition(
                        SessionState.FAILED,
                        reason,
                        error=result.describe().splitlines()[0],
                        result=result,
                    )
                )
            return Attempt(result=result, events=events)

    def reauthorize(self, credentials: Credentials, address: str, reason: str) -> Attempt:
        return self.login(credentials, address, reason=reason)

    def logout(self, credentials: Credentials, address: Optional[str] = None) -> Attempt:
        with self._gate:
            session = self.snapshot()
            target = address or session.address
            events: list[SessionEvent] = []
            if not target:
                result = PortalResult(PortalOutcome.ALREADY_LOGGED_IN, detail="nothing to revoke")
                if session.state != SessionState.LOGGED_OUT:
                    events.append(
                        self._transition(SessionState.LOGGED_OUT, "nothing to revoke", result=result)
                    )
                return Attempt(result=result, events=events)

            result = self._client.logout(credentials, target)
            owns_target = session.address is None or session.address == target
            if result.ok and owns_target and session.state != SessionState.LOGGED_OUT:
                events.append(
                    self._transition(SessionState.LOGGED_OUT, f"revoked {target}", result=result)
                )
            return Attempt(result=result, events=events)

    def query_portal(self, credentials: Credentials) -> PortalResult:
        with self._gate:
            return self._client.query_status(credentials)

    def _transition(
        self,
        state: SessionState,
        reason: str,
        address: Optional[str] = None,
        error: Optional[str] = None,
        result: Optional[PortalResult] = None,
    ) -> SessionEvent:
        with self._lock:
            previous = self._session
            if state not in ALLOWED_TRANSITIONS[previous.state]:
                raise SessionStateError(
                    f"Illegal transition {previous.state.value} -> {state.value}"
                )
            self._session = previous.moved_to(state, self._clock(), address=address, error=error)
            event = SessionEvent(
                previous=previous.state, session=self._session, reason=reason, result=result
            )

        logger.info(
            "Session %s -> %s (%s)%s",
            previous.state.value,
            state.value,
            reason,
            f" at {address}" if address else "",
        )
        for listener in list(self._listeners):
            listener(event)
        return event
