import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Tuple

from netaccess.address import AddressObserver
from netaccess.errors import AddressUnavailable, CredentialError
from netaccess.models import (
    Credentials,
    PortalOutcome,
    PortalResult,
    Session,
    SessionEvent,
    SessionState,
)
from netaccess.session import SessionMachine
from netaccess.settings import MIN_POLL_INTERVAL

logger = logging.getLogger("netaccess.monitor")

TickResult = Tuple[Optional[PortalResult], list[SessionEvent]]


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True when cancelled meanwhile."""
        return self._event.wait(timeout)


@dataclass(frozen=True)
class Backoff:
    base: float
    maximum: float

    def delay(self, failures: int) -> float:
        if failures <= 0:
            return self.base
        # cap the exponent, 2**n overflows float for large n
        exponent = min(failures, 32)
        return min(self.base * (2 ** exponent), self.maximum)


class MonitorHandle:
    def __init__(self, token: CancellationToken) -> None:
        self.token = token
        self.error: Optional[BaseException] = None
        self.thread: Optional[threading.Thread] = None

    def is_alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> None:
        if self.thread is not None:
            self.thread.join(timeout)

    def stop(self, timeout: Optional[float] = None) -> None:
        self.token.cancel()
        self.join(timeout)


class AutoReauthorizer:
    """Polls the host address and keeps the portal approval in step with it."""

    def __init__(
        self,
        machine: SessionMachine,
        observer: AddressObserver,
        max_backoff: float = 3600,
        check_expiry: bool = True,
        min_interval: float = MIN_POLL_INTERVAL,
    ) -> None:
        self._machine = machine
        self._observer = observer
        self.max_backoff = max_backoff
        self.check_expiry = check_expiry
        self.min_interval = min_interval
        self._started = False

    @classmethod
    def from_config(
        cls, machine: SessionMachine, observer: AddressObserver, config: dict
    ) -> "AutoReauthorizer":
        monitor_config = config["monitor"]
        return cls(
            machine,
            observer,
            max_backoff=float(monitor_config["max_backoff_seconds"]),
            check_expiry=bool(monitor_config.get("check_expiry", True)),
        )

    def run(
        self,
        credentials: Credentials,
        poll_interval: float,
        cancellation_token: CancellationToken,
    ) -> Iterator[SessionEvent]:
        if self._started:
            raise RuntimeError("Monitor loop already started; create a new one")
        if poll_interval < self.min_interval:
            raise ValueError(
                f"Suspend duration is less than minimum allowed {self.min_interval}"
            )
        self._started = True
        backoff = Backoff(base=poll_interval, maximum=max(self.max_backoff, poll_interval))
        return self._loop(credentials, backoff, cancellation_token)

    def start_background(
        self,
        credentials: Credentials,
        poll_interval: float,
        cancellation_token: CancellationToken,
        on_event: Callable[[SessionEvent], None],
    ) -> MonitorHandle:
        events = self.run(credentials, poll_interval, cancellation_token)
        handle = MonitorHandle(cancellation_token)

        def consume() -> None:
            try:
                for event in events:
                    on_event(event)
            except CredentialError as exc:
                handle.error = exc
                logger.error("Monitor stopped: %s", exc)
            except Exception as exc:
                handle.error = exc
                raise

        handle.thread = threading.Thread(target=consume, name="netaccess-monitor", daemon=True)
        handle.thread.start()
        return handle

    def _loop(
        self,
        credentials: Credentials,
        backoff: Backoff,
        token: CancellationToken,
    ) -> Iterator[SessionEvent]:
        failures = 0
        logger.info("Entering monitor mode, polling every %.0fs", backoff.base)
        while not token.cancelled:
            result, events = self._tick(credentials)
            yield from events

            if result is not None:
                if result.outcome == PortalOutcome.INVALID_CREDENTIALS:
                    raise CredentialError(result.detail or "Invalid user credentials")
                if result.outcome == PortalOutcome.NETWORK_UNREACHABLE:
                    failures += 1
                elif result.ok:
                    failures = 0

            delay = backoff.delay(failures)
            if failures:
                logger.warning(
                    "Portal unreachable %d time(s) in a row, next check in %.0fs", failures, delay
                )
            else:
                logger.debug("Suspending for %.0fs", delay)
            if token.wait(delay):
                break
        logger.info("Monitor cancelled")

    def _tick(self, credentials: Credentials) -> TickResult:
        try:
            observation = self._observer.sample()
        except AddressUnavailable as exc:
            logger.warning("Address unavailable, retrying next tick: %s", exc)
            return None, []

        session = self._machine.snapshot()
        if self._machine.needs_reauthorization(observation):
            reason = describe_trigger(session, observation.address)
            logger.info("IP %s is not authorized (%s), approving...", observation.address, reason)
            attempt = self._machine.reauthorize(credentials, observation.address, reason)
            return attempt.result, attempt.events

        if not self.check_expiry:
            return None, []

        address = observation.address
        status_result = self._machine.query_portal(credentials)
        if not status_result.ok or status_result.status is None:
            logger.warning("Status check failed: %s", status_result.describe().splitlines()[0])
            return status_result, []
        if status_result.status.is_active(address):
            logger.debug("IP %s is active", address)
            return status_result, []

        attempt = self._machine.reauthorize(
            credentials, address, f"portal reports {address} inactive"
        )
        return attempt.result, attempt.events


def describe_trigger(session: Session, address: str) -> str:
    if session.state == SessionState.LOGGED_IN:
        return f"address changed {session.address} -> {address}"
    if session.state == SessionState.FAILED:
        return "retry after failure"
    return "initial login"
