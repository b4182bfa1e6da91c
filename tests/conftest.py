import json
from typing import Optional
from unittest.mock import MagicMock
from urllib.parse import urlparse

import pytest
import requests

from netaccess.models import AddressObservation, Credentials, PortalOutcome, PortalResult
from netaccess.monitor import CancellationToken
from netaccess.portal import PortalClient

BASE_URL = "https://netaccess.iitm.ac.in"
FUTURE = "24 Jul 2099, 10:07"
PAST = "24 Jul 2020, 10:07"


def index_page(rows: list) -> str:
    body = [
        "<html><body><table class='table'>",
        "<tbody>",
        "<tr><th>MAC</th><th align='center'>IP</th><th>Valid till</th>"
        "<th>Download today</th><th colspan='2'>Status</th></tr>",
    ]
    for ip, valid_till, label in rows:
        body.append(
            "<tr>"
            "<td>\n  AA:BB:CC:DD:EE:FF\n</td>"
            f"<td>{ip}</td>"
            f"<td>{valid_till}</td>"
            "<td>     0 B</td>"
            f"<td><span class='label label-success'>{label}</span></td>"
            f"<td><a href=\"/account/revoke/{ip}\"><span class='label label-danger'>Delete</span></a></td>"
            "</tr>"
        )
    body.append("</tbody></table></body></html>")
    return "\n".join(body)


LOGIN_PAGE = (
    "<html><body><form method='post' action='/account/login'>"
    "<div class=\"alert alert-danger\">Invalid username or password</div>"
    "<input name='userLogin'><input type='password' name='userPassword'>"
    "</form></body></html>"
)


def make_response(path: str, text: str = "", status_code: int = 200) -> MagicMock:
    response = MagicMock(spec=requests.Response)
    response.url = BASE_URL + path
    response.text = text
    response.status_code = status_code
    response.ok = status_code < 400
    return response


class FakeHttp:
    """Stands in for requests.Session; routes POSTs by URL path."""

    def __init__(self, routes: dict) -> None:
        self.routes = routes
        self.calls: list = []
        self.headers: dict = {}
        self.verify: Optional[bool] = None
        self.closed = False

    def post(self, url, data=None, timeout=None):
        self.calls.append((urlparse(url).path, data, timeout))
        outcome = self.routes[urlparse(url).path]
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        self.closed = True

    def paths(self) -> list:
        return [path for path, _, _ in self.calls]


class CountingToken(CancellationToken):
    """Cancels itself after ``ticks`` waits and never sleeps."""

    def __init__(self, ticks: int) -> None:
        super().__init__()
        self.ticks = ticks
        self.waits: list = []

    def wait(self, timeout: float) -> bool:
        self.waits.append(timeout)
        if len(self.waits) >= self.ticks:
            self.cancel()
        return self.cancelled


@pytest.fixture
def credentials() -> Credentials:
    return Credentials("ab19c001", "s3cret-pass")


@pytest.fixture
def portal():
    def build(routes: dict, **kwargs):
        http = FakeHttp(routes)
        client = PortalClient(timeout=5, session_factory=lambda: http, **kwargs)
        return client, http

    return build


@pytest.fixture
def fake_client():
    client = MagicMock(spec=PortalClient)
    client.login.return_value = PortalResult(PortalOutcome.SUCCESS, address="10.0.0.5")
    client.logout.return_value = PortalResult(PortalOutcome.SUCCESS, address="10.0.0.5")
    return client


@pytest.fixture
def observer_of():
    def build(*samples):
        observer = MagicMock()
        observer.sample.side_effect = [
            AddressObservation(sample) if isinstance(sample, str) else sample
            for sample in samples
        ]
        return observer

    return build


@pytest.fixture
def config_file(tmp_path):
    def build(overrides: Optional[dict] = None):
        data = {"log_dir": str(tmp_path / "logs")}
        data.update(overrides or {})
        path = tmp_path / "settings.json"
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return build
