import argparse
import ipaddress
import logging
from pathlib import Path
from typing import Optional, Sequence

from netaccess import __version__
from netaccess.address import AddressObserver
from netaccess.credentials import CredentialSource, PromptCredentialSource
from netaccess.errors import (
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_OK,
    ConfigError,
    NetAccessError,
)
from netaccess.logging_config import setup_logging
from netaccess.models import Credentials, PortalOutcome, SessionEvent
from netaccess.monitor import AutoReauthorizer, CancellationToken
from netaccess.portal import PortalClient, mask_value
from netaccess.session import SessionMachine
from netaccess.settings import DURATIONS, MIN_POLL_INTERVAL, load_config
from netaccess.status import StatusReporter, render_portal_status

logger = logging.getLogger("netaccess.cli")

JOIN_POLL_SECONDS = 0.5


def ip_address_arg(value: str) -> str:
    try:
        return str(ipaddress.ip_address(value))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Ip address is malformed {value}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="netaccess",
        description="Approve, revoke and monitor this machine's netaccess.iitm.ac.in authorization.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="path to settings.json")
    parser.add_argument("--username", help="portal username (prompted when omitted)")
    parser.add_argument("--log-level", help="override the configured log level")

    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    commands.add_parser("status", help="query the status of the user account")

    login = commands.add_parser(
        "login", aliases=["approve"], help="approve the system IP address"
    )
    login.add_argument(
        "-d",
        "--duration",
        choices=sorted(DURATIONS, key=DURATIONS.get),
        help="how long the address stays approved (default from config)",
    )
    login.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="approve even if the system IP is already marked active",
    )

    logout = commands.add_parser(
        "logout", aliases=["revoke"], help="revoke authorization of an IP address"
    )
    logout.add_argument(
        "-i",
        "--ip",
        type=ip_address_arg,
        help="address to revoke; defaults to this system's address",
    )

    monitor = commands.add_parser(
        "monitor",
        help="periodically check the system IP address and approve it when needed",
    )
    monitor.add_argument(
        "-s",
        "--interval",
        type=float,
        help=f"seconds to sleep between checks (minimum {MIN_POLL_INTERVAL})",
    )
    monitor.add_argument(
        "-d",
        "--duration",
        choices=sorted(DURATIONS, key=DURATIONS.get),
        help="approval duration used for re-authorization",
    )
    monitor.add_argument("-q", "--quiet", action="store_true", help="disable status lines")
    return parser


def report_failure(error: NetAccessError) -> int:
    logger.error("%s", str(error).splitlines()[0] if str(error) else type(error).__name__)
    return error.exit_code


def run_status(machine: SessionMachine, observer: AddressObserver, credentials: Credentials) -> int:
    observation = observer.sample()
    result = machine.query_portal(credentials)
    error = result.error()
    if error:
        return report_failure(error)
    for line in render_portal_status(result.status, observation.address):
        print(line)
    return EXIT_OK


def run_login(
    machine: SessionMachine,
    observer: AddressObserver,
    credentials: Credentials,
    force: bool,
    duration: str,
) -> int:
    observation = observer.sample()
    attempt = machine.login(credentials, observation.address, force=force)
    error = attempt.result.error()
    if error:
        return report_failure(error)
    if attempt.result.outcome == PortalOutcome.ALREADY_LOGGED_IN:
        print(f"{observation.address} is already approved for {credentials.username}")
    else:
        print(
            f"Approved {observation.address} for {credentials.username} for 1 {duration} successfully"
        )
    return EXIT_OK


def run_logout(
    machine: SessionMachine,
    observer: AddressObserver,
    credentials: Credentials,
    ip: Optional[str],
) -> int:
    address = ip or observer.sample().address
    attempt = machine.logout(credentials, address)
    error = attempt.result.error()
    if error:
        return report_failure(error)
    if attempt.result.outcome == PortalOutcome.ALREADY_LOGGED_IN:
        print(f"{address} was not active for {credentials.username}")
    else:
        print(f"Revoked {address} for {credentials.username} successfully")
    return EXIT_OK


def run_monitor(
    machine: SessionMachine,
    observer: AddressObserver,
    credentials: Credentials,
    config: dict,
    interval: float,
    quiet: bool,
) -> int:
    reporter = StatusReporter(machine)
    reauthorizer = AutoReauthorizer.from_config(machine, observer, config)
    token = CancellationToken()

    def on_event(event: SessionEvent) -> None:
        if not quiet:
            print(f"[{event.reason}] {reporter.summary()}")

    if not quiet:
        print("Entering monitor mode")
    handle = reauthorizer.start_background(credentials, interval, token, on_event)
    interrupted = False
    try:
        while handle.is_alive():
            handle.join(JOIN_POLL_SECONDS)
    except KeyboardInterrupt:
        logger.info("Interrupted, waiting for in-flight portal call to finish")
        interrupted = True
        handle.stop()

    if interrupted:
        return EXIT_INTERRUPTED
    if isinstance(handle.error, NetAccessError):
        return report_failure(handle.error)
    if handle.error is not None:
        return EXIT_FAILURE
    return EXIT_OK


def main(
    argv: Optional[Sequence[str]] = None,
    credential_source: Optional[CredentialSource] = None,
    client: Optional[PortalClient] = None,
    observer: Optional[AddressObserver] = None,
) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Configuration error: {exc}")
        return exc.exit_code

    quiet = getattr(args, "quiet", False)
    setup_logging(
        Path(config["log_dir"]),
        log_level=args.log_level or config["log_level"],
        console=not quiet,
    )

    duration = getattr(args, "duration", None) or config["approve"]["duration"]
    client = client or PortalClient.from_config(config, duration=duration)
    observer = observer or AddressObserver.from_config(config)
    machine = SessionMachine(client)
    source = credential_source or PromptCredentialSource(username=args.username)

    interval = getattr(args, "interval", None)
    if interval is None:
        interval = float(config["monitor"]["poll_interval_seconds"])
    if args.command == "monitor" and interval < MIN_POLL_INTERVAL:
        logger.error("Suspend duration is less than minimum allowed %s", MIN_POLL_INTERVAL)
        return EXIT_FAILURE

    credentials: Optional[Credentials] = None
    try:
        credentials = source.get()
        logger.debug("Running %s for %s", args.command, mask_value(credentials.username))

        if args.command == "status":
            return run_status(machine, observer, credentials)
        if args.command in ("login", "approve"):
            return run_login(machine, observer, credentials, args.force, duration)
        if args.command in ("logout", "revoke"):
            return run_logout(machine, observer, credentials, args.ip)
        return run_monitor(
            machine, observer, credentials, config, interval, args.quiet
        )
    except NetAccessError as exc:
        return report_failure(exc)
    except (KeyboardInterrupt, EOFError):
        print()
        return EXIT_INTERRUPTED
    finally:
        if credentials is not None:
            credentials.discard()
