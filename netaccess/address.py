import ipaddress
import logging
import socket
from typing import Callable, Optional

from netaccess.errors import AddressUnavailable
from netaccess.models import AddressObservation, utcnow

logger = logging.getLogger("netaccess.address")

DEFAULT_PROBE_HOST = "netaccess.iitm.ac.in"
DEFAULT_PROBE_PORT = 443


def is_usable_address(value: str) -> bool:
    try:
        ip = ipaddress.ip_address(value)
    except ValueError:
        return False
    return not (ip.is_loopback or ip.is_unspecified or ip.is_link_local or ip.is_multicast)


def local_ipv4_for_host(host: str, port: int = DEFAULT_PROBE_PORT) -> str:
    """Address the kernel routes to ``host`` from. No packet is sent for UDP connect."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect((host, port))
        return sock.getsockname()[0]
    finally:
        sock.close()


class AddressObserver:
    def __init__(
        self,
        probe_host: str = DEFAULT_PROBE_HOST,
        probe_port: int = DEFAULT_PROBE_PORT,
        static_address: str = "",
        resolver: Callable[[str, int], str] = local_ipv4_for_host,
        clock=utcnow,
    ) -> None:
        if static_address and not is_usable_address(static_address):
            raise ValueError(f"Static address is not usable: {static_address!r}")
        self.probe_host = probe_host
        self.probe_port = probe_port
        self.static_address = static_address
        self._resolver = resolver
        self._clock = clock

    @classmethod
    def from_config(cls, config: dict) -> "AddressObserver":
        address_config = config.get("address", {})
        return cls(
            probe_host=address_config.get("probe_host") or DEFAULT_PROBE_HOST,
            static_address=address_config.get("static") or "",
        )

    def sample(self) -> AddressObservation:
        if self.static_address:
            return AddressObservation(address=self.static_address, observed_at=self._clock())

        try:
            address: Optional[str] = self._resolver(self.probe_host, self.probe_port)
        except OSError as exc:
            raise AddressUnavailable(
                f"No route to {self.probe_host}: {exc}"
            ) from exc

        if not address or not is_usable_address(address):
            raise AddressUnavailable(f"No usable network address (got {address!r})")

        logger.debug("Sampled address %s", address)
        return AddressObservation(address=address, observed_at=self._clock())
