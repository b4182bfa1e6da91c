import ipaddress
import logging
import re
import time
from datetime import datetime
from html.parser import HTMLParser
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

import requests

from netaccess import __version__
from netaccess.errors import CredentialError, ProtocolError
from netaccess.models import (
    PORTAL_TZ,
    Connection,
    Credentials,
    PortalOutcome,
    PortalResult,
    PortalStatus,
)
from netaccess.settings import DEFAULT_CONFIG, DURATIONS

logger = logging.getLogger("netaccess.portal")

DEFAULT_BASE_URL = DEFAULT_CONFIG["portal"]["base_url"]
LOGIN_PATH = "/account/login"
INDEX_PATH = "/account/index"
APPROVE_PATH = "/account/approve"
REVOKE_PATH = "/account/revoke"

USER_NAME_FIELD = "userLogin"
PASSWORD_FIELD = "userPassword"
DURATION_FIELD = "duration"
APPROVE_BTN_FIELD = "approveBtn"

VALIDITY_FORMAT = "%d %b %Y, %H:%M"
MAX_DETAIL_CHARS = 2000


class ConnectionTableParser(HTMLParser):
    """Collects the rows of the first <tbody> on the account index page.

    The portal renders one header row of <th> cells followed by a row per
    registered address::

        <tr><td>MAC</td><td>10.21.4.7</td><td>24 Jul 2023, 10:07</td>
            <td>0 B</td><td><span class='label label-success'>Active</span></td>
            <td><a href="/account/revoke/10.21.4.7">...</a></td></tr>

    Only <td> text and the first <span> of each row are kept.
    """

    def __init__(self) -> None:
        super().__init__()
        self.found_tbody = False
        self.rows: list[Tuple[list[str], Optional[str]]] = []
        self._in_tbody = False
        self._done = False
        self._cells: Optional[list[str]] = None
        self._cell: Optional[list[str]] = None
        self._label: Optional[list[str]] = None
        self._row_label: Optional[str] = None

    def handle_starttag(self, tag: str, attrs: list[Tuple[str, Optional[str]]]) -> None:
        tag = tag.lower()
        if self._done:
            return
        if tag == "tbody":
            self.found_tbody = True
            self._in_tbody = True
            return
        if not self._in_tbody:
            return

        if tag == "tr":
            self._finish_row()
            self._cells = []
            self._row_label = None
        elif tag == "td" and self._cells is not None:
            self._finish_cell()
            self._cell = []
        elif tag == "span" and self._cells is not None and self._row_label is None:
            self._label = []

    def handle_data(self, data: str) -> None:
        if self._label is not None:
            self._label.append(data)
        if self._cell is not None:
            self._cell.append(data)

    def handle_endtag(self, tag: str) -> None:
        tag = tag.lower()
        if not self._in_tbody:
            return
        if tag == "span" and self._label is not None:
            self._row_label = clean_text("".join(self._label))
            self._label = None
        elif tag == "td":
            self._finish_cell()
        elif tag == "tr":
            self._finish_row()
        elif tag == "tbody":
            self._finish_row()
            self._in_tbody = False
            self._done = True

    def close(self) -> None:
        super().close()
        if self._in_tbody:
            self._finish_row()
            self._in_tbody = False

    def _finish_cell(self) -> None:
        if self._cell is not None and self._cells is not None:
            self._cells.append(clean_text("".join(self._cell)))
        self._cell = None

    def _finish_row(self) -> None:
        self._finish_cell()
        if self._cells is not None:
            self.rows.append((self._cells, self._row_label))
        self._cells = None
        self._row_label = None
        self._label = None


def clean_text(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def mask_value(value: str, keep: int = 2) -> str:
    if not value:
        return ""
    if len(value) <= keep * 2:
        return "*" * len(value)
    return f"{value[:keep]}***{value[-keep:]}"


def extract_error_hint(text: str) -> str:
    if not text:
        return ""
    patterns = (
        r'alert\(["\']([^"\']+)["\']\)',
        r'<div[^>]*class="[^"]*alert[^"]*"[^>]*>([^<]+)</div>',
        r'<p[^>]*class="[^"]*error[^"]*"[^>]*>([^<]+)</p>',
        r'<span[^>]*class="[^"]*error[^"]*"[^>]*>([^<]+)</span>',
    )
    for pattern in patterns:
        match = re.search(pattern, text, re.IGNORECASE)
        if match:
            return clean_text(match.group(1))
    return ""


def sanitize_response(text: str, username: str, password: str) -> str:
    if not text:
        return ""
    sanitized = text
    for label, value in (("userLogin", username), ("userPassword", password)):
        if value:
            sanitized = sanitized.replace(value, f"{label}=***")
    sanitized = re.sub(
        r'(<input[^>]+name="userPassword"[^>]+value=")[^"]*(")',
        r"\1***\2",
        sanitized,
        flags=re.IGNORECASE,
    )
    return sanitized


def save_response_snapshot(debug_config: dict, text: str) -> Optional[Path]:
    if not text:
        return None
    response_dir = Path(debug_config.get("response_dir", "logs/portal_responses"))
    max_bytes = int(debug_config.get("max_response_bytes", 32768))
    response_dir.mkdir(parents=True, exist_ok=True)
    timestamp = time.strftime("%Y%m%d_%H%M%S")
    file_path = response_dir / f"response_{timestamp}.html"
    payload = text.encode("utf-8", errors="ignore")[:max_bytes]
    file_path.write_bytes(payload)
    logger.info("Saved response snapshot: %s", file_path)
    return file_path


def parse_validity(value: str) -> datetime:
    try:
        return datetime.strptime(value, VALIDITY_FORMAT).replace(tzinfo=PORTAL_TZ)
    except ValueError as exc:
        raise ProtocolError(f"Malformed validity {value!r}") from exc


def parse_connections(html: str) -> PortalStatus:
    parser = ConnectionTableParser()
    parser.feed(html or "")
    parser.close()
    if not parser.found_tbody:
        raise ProtocolError("Html does not have a tbody element", raw=html)

    connections: Dict[str, Connection] = {}
    # first row is the column header
    for cells, label in parser.rows[1:]:
        if not cells:
            continue
        if len(cells) < 2 or not cells[1]:
            raise ProtocolError("Missing ip address element", raw=html)
        if len(cells) < 3 or not cells[2]:
            raise ProtocolError("Missing validity element", raw=html)
        if label is None:
            raise ProtocolError("Missing status element", raw=html)
        try:
            address = str(ipaddress.ip_address(cells[1]))
        except ValueError as exc:
            raise ProtocolError(f"Malformed ip address {cells[1]!r}", raw=html) from exc
        connections[address] = Connection(
            address=address,
            valid_till=parse_validity(cells[2]),
            active=label == "Active",
        )
    return PortalStatus(connections=connections)


def response_path(response: requests.Response) -> str:
    path = urlparse(response.url or "").path
    if len(path) > 1:
        path = path.rstrip("/")
    return path


class PortalClient:
    """Stateless client for the netaccess account pages.

    Each public call opens a fresh ``requests.Session`` so the portal cookie
    lives exactly as long as the exchange. Expected failures are returned as
    a :class:`PortalResult`, never raised.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 5,
        duration: str = "day",
        verify_tls: bool = True,
        debug_config: Optional[dict] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        if duration not in DURATIONS:
            raise ValueError(f"Unknown approval duration {duration!r}")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.duration = duration
        self.verify_tls = verify_tls
        self.debug_config = debug_config or {}
        self._session_factory = session_factory

    @classmethod
    def from_config(cls, config: dict, duration: Optional[str] = None) -> "PortalClient":
        return cls(
            base_url=config["portal"]["base_url"],
            timeout=float(config["http"]["timeout_seconds"]),
            duration=duration or config["approve"]["duration"],
            verify_tls=bool(config["portal"].get("verify_tls", True)),
            debug_config=config.get("debug", {}),
        )

    @property
    def duration_index(self) -> int:
        return DURATIONS[self.duration]

    def login(self, credentials: Credentials, address: str, force: bool = False) -> PortalResult:
        def approve(http: requests.Session) -> PortalResult:
            status = parse_connections(self._sign_in(http, credentials).text)
            if not force and status.is_active(address):
                logger.info("Address %s already approved, skipping", address)
                return PortalResult(
                    PortalOutcome.ALREADY_LOGGED_IN,
                    address=address,
                    detail=f"{address} is already active",
                    status=status,
                )

            response = http.post(
                self._url(APPROVE_PATH),
                data={DURATION_FIELD: str(self.duration_index), APPROVE_BTN_FIELD: ""},
                timeout=self.timeout,
            )
            self._expect_index(response, "Approve")
            approved = parse_connections(response.text)
            if not approved.is_active(address):
                others = [ip for ip in approved.active_addresses() if ip != address]
                message = f"Portal does not list {address} as active after approval"
                if others:
                    message += f" (active: {', '.join(others)})"
                raise ProtocolError(message, raw=response.text)

            logger.info("Approved %s for 1 %s", address, self.duration)
            return PortalResult(PortalOutcome.SUCCESS, address=address, status=approved)

        return self._exchange("login", credentials, address, approve)

    def logout(self, credentials: Credentials, address: str) -> PortalResult:
        address = str(ipaddress.ip_address(address))

        def revoke(http: requests.Session) -> PortalResult:
            status = parse_connections(self._sign_in(http, credentials).text)
            if not status.is_active(address):
                logger.info("Address %s has no active approval, nothing to revoke", address)
                return PortalResult(
                    PortalOutcome.ALREADY_LOGGED_IN,
                    address=address,
                    detail=f"{address} is not active",
                    status=status,
                )

            response = http.post(self._url(f"{REVOKE_PATH}/{address}"), timeout=self.timeout)
            self._expect_index(response, "Revoke")
            try:
                remaining: Optional[PortalStatus] = parse_connections(response.text)
            except ProtocolError:
                remaining = None
            logger.info("Revoked %s", address)
            return PortalResult(PortalOutcome.SUCCESS, address=address, status=remaining)

        return self._exchange("logout", credentials, address, revoke)

    def query_status(self, credentials: Credentials) -> PortalResult:
        def fetch(http: requests.Session) -> PortalResult:
            status = parse_connections(self._sign_in(http, credentials).text)
            logger.debug("Portal lists %d connection(s)", len(status.connections))
            return PortalResult(PortalOutcome.SUCCESS, status=status)

        return self._exchange("status", credentials, None, fetch)

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _open(self) -> requests.Session:
        http = self._session_factory()
        http.verify = self.verify_tls
        http.headers.update({"User-Agent": f"netaccess-login/{__version__}"})
        return http

    def _sign_in(self, http: requests.Session, credentials: Credentials) -> requests.Response:
        logger.debug("Signing in as %s", mask_value(credentials.username))
        response = http.post(
            self._url(LOGIN_PATH),
            data={USER_NAME_FIELD: credentials.username, PASSWORD_FIELD: credentials.password},
            timeout=self.timeout,
        )
        if not response.ok:
            raise ProtocolError(
                f"Login response failed with status {response.status_code}", raw=response.text
            )
        path = response_path(response)
        if path == INDEX_PATH:
            return response
        if path == LOGIN_PATH:
            raise CredentialError(extract_error_hint(response.text) or "Invalid user credentials")
        raise ProtocolError(f"Unexpected URL path in login response {path}", raw=response.text)

    def _expect_index(self, response: requests.Response, action: str) -> None:
        if not response.ok:
            raise ProtocolError(
                f"{action} response failed with status {response.status_code}", raw=response.text
            )
        path = response_path(response)
        if path != INDEX_PATH:
            raise ProtocolError(
                f"Unexpected URL path in {action.lower()} response {path}", raw=response.text
            )

    def _exchange(
        self,
        action: str,
        credentials: Credentials,
        address: Optional[str],
        operation: Callable[[requests.Session], PortalResult],
    ) -> PortalResult:
        http = self._open()
        try:
            return operation(http)
        except requests.RequestException as exc:
            logger.warning("Portal %s request failed: %s", action, exc)
            return PortalResult(
                PortalOutcome.NETWORK_UNREACHABLE, address=address, detail=str(exc)
            )
        except CredentialError as exc:
            logger.warning(
                "Portal rejected credentials for %s: %s", mask_value(credentials.username), exc
            )
            return PortalResult(
                PortalOutcome.INVALID_CREDENTIALS, address=address, detail=str(exc)
            )
        except ProtocolError as exc:
            raw = sanitize_response(exc.raw, credentials.username, credentials.password)
            logger.error("Portal %s returned an unexpected response: %s", action, exc)
            if self.debug_config.get("save_response"):
                try:
                    save_response_snapshot(self.debug_config, raw)
                except OSError as snapshot_exc:
                    logger.warning("Could not save response snapshot: %s", snapshot_exc)
            detail = str(exc)
            if raw:
                detail = f"{detail}\n{raw[:MAX_DETAIL_CHARS]}"
            return PortalResult(
                PortalOutcome.UNEXPECTED_RESPONSE, address=address, detail=detail
            )
        finally:
            http.close()
