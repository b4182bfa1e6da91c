from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from netaccess.cli import build_parser, main
from netaccess.errors import (
    EXIT_ADDRESS_UNAVAILABLE,
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_INVALID_CREDENTIALS,
    EXIT_NETWORK_UNREACHABLE,
    EXIT_OK,
    EXIT_PROTOCOL_ERROR,
    AddressUnavailable,
)
from netaccess.models import (
    AddressObservation,
    PORTAL_TZ,
    Connection,
    Credentials,
    PortalOutcome,
    PortalResult,
    PortalStatus,
)
from netaccess.monitor import MonitorHandle


@pytest.fixture
def cli(config_file, fake_client):
    issued = []

    def source_get():
        credentials = Credentials("ab19c001", "s3cret-pass")
        issued.append(credentials)
        return credentials

    source = MagicMock()
    source.get.side_effect = source_get
    observer = MagicMock()
    observer.sample.return_value = AddressObservation("10.0.0.5")

    def run(*argv, overrides=None):
        path = config_file(overrides)
        return main(
            ["--config", str(path), *argv],
            credential_source=source,
            client=fake_client,
            observer=observer,
        )

    run.client = fake_client
    run.observer = observer
    run.issued = issued
    return run


class TestParser:
    def test_login_defaults(self):
        args = build_parser().parse_args(["login"])
        assert args.force is False
        assert args.duration is None

    def test_aliases(self):
        assert build_parser().parse_args(["approve", "-d", "month", "-f"]).force is True
        assert build_parser().parse_args(["revoke", "--ip", "10.0.0.77"]).ip == "10.0.0.77"

    def test_malformed_ip_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["logout", "--ip", "10.0.0"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


def test_login_success(cli, capsys):
    assert cli("login") == EXIT_OK
    assert "Approved 10.0.0.5 for ab19c001 for 1 day successfully" in capsys.readouterr().out
    cli.client.login.assert_called_once()
    assert cli.issued[0].discarded


def test_login_already_active(cli, capsys):
    cli.client.login.return_value = PortalResult(PortalOutcome.ALREADY_LOGGED_IN, "10.0.0.5")
    assert cli("login") == EXIT_OK
    assert "already approved" in capsys.readouterr().out


@pytest.mark.parametrize(
    "outcome, code",
    [
        (PortalOutcome.INVALID_CREDENTIALS, EXIT_INVALID_CREDENTIALS),
        (PortalOutcome.NETWORK_UNREACHABLE, EXIT_NETWORK_UNREACHABLE),
        (PortalOutcome.UNEXPECTED_RESPONSE, EXIT_PROTOCOL_ERROR),
    ],
)
def test_login_failures_map_to_exit_codes(cli, outcome, code):
    cli.client.login.return_value = PortalResult(outcome, "10.0.0.5", detail="nope")
    assert cli("login") == code
    assert cli.issued[0].discarded


def test_address_unavailable_exit_code(cli):
    cli.observer.sample.side_effect = AddressUnavailable("interface down")
    assert cli("login") == EXIT_ADDRESS_UNAVAILABLE
    cli.client.login.assert_not_called()


def test_force_flag_passed_through(cli):
    cli("login", "--force")
    _, kwargs = cli.client.login.call_args
    assert kwargs["force"] is True


def test_logout_uses_sampled_address(cli, capsys):
    assert cli("logout") == EXIT_OK
    cli.client.logout.assert_called_once_with(cli.issued[0], "10.0.0.5")
    assert "Revoked 10.0.0.5" in capsys.readouterr().out


def test_logout_explicit_ip_is_idempotent(cli, capsys):
    cli.client.logout.return_value = PortalResult(PortalOutcome.ALREADY_LOGGED_IN, "10.0.0.77")
    assert cli("revoke", "--ip", "10.0.0.77") == EXIT_OK
    assert cli("revoke", "--ip", "10.0.0.77") == EXIT_OK
    cli.observer.sample.assert_not_called()
    assert "10.0.0.77 was not active" in capsys.readouterr().out


def test_status_prints_portal_table(cli, capsys):
    valid_till = datetime.now(PORTAL_TZ) + timedelta(days=1, hours=2, minutes=30)
    cli.client.query_status.return_value = PortalResult(
        PortalOutcome.SUCCESS,
        status=PortalStatus({"10.0.0.5": Connection("10.0.0.5", valid_till, True)}),
    )

    assert cli("status") == EXIT_OK

    out = capsys.readouterr().out
    assert "Your IP address is 10.0.0.5 and active for 1 days, 2 hours" in out
    assert "Number of other registered connections: 0" in out


def test_status_network_failure(cli):
    cli.client.query_status.return_value = PortalResult(PortalOutcome.NETWORK_UNREACHABLE)
    assert cli("status") == EXIT_NETWORK_UNREACHABLE


def test_monitor_rejects_short_interval(cli):
    assert cli("monitor", "--interval", "10") == EXIT_FAILURE
    assert cli.issued == []


def test_monitor_stops_on_invalid_credentials(cli, capsys):
    cli.client.login.return_value = PortalResult(PortalOutcome.INVALID_CREDENTIALS)
    assert cli("monitor") == EXIT_INVALID_CREDENTIALS
    out = capsys.readouterr().out
    assert "Entering monitor mode" in out
    assert "Failed since" in out
    assert cli.issued[0].discarded


def test_monitor_rejects_zero_interval(cli):
    assert cli("monitor", "--interval", "0") == EXIT_FAILURE
    assert cli.issued == []


def test_monitor_quiet(cli, capsys):
    cli.client.login.return_value = PortalResult(PortalOutcome.INVALID_CREDENTIALS)
    assert cli("monitor", "--quiet") == EXIT_INVALID_CREDENTIALS
    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err == ""


def test_monitor_ctrl_c_exits_interrupted(cli, monkeypatch):
    join = MonitorHandle.join
    calls = []

    def interrupted_join(self, timeout=None):
        calls.append(timeout)
        if len(calls) == 1:
            raise KeyboardInterrupt
        join(self, timeout)

    monkeypatch.setattr(MonitorHandle, "join", interrupted_join)

    assert cli("monitor", overrides={"monitor": {"check_expiry": False}}) == EXIT_INTERRUPTED
    assert len(calls) == 2
    assert cli.issued[0].discarded


def test_bad_config(cli, capsys):
    assert cli("login", overrides={"approve": {"duration": "week"}}) == EXIT_FAILURE
    assert "Configuration error" in capsys.readouterr().out
