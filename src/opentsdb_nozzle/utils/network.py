"""Local address discovery."""

import logging
import socket

from ..errors import LocalIPError


logger = logging.getLogger(__name__)

# Never actually contacted: connecting a UDP socket only picks a route
_PROBE_ADDRESS = ("8.8.8.8", 53)


def local_ip() -> str:
    """
    Return the IP address of the interface used for outbound traffic.

    Raises:
        LocalIPError: If no route is available
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            probe.connect(_PROBE_ADDRESS)
            address = probe.getsockname()[0]
    except OSError as e:
        raise LocalIPError(f"Unable to determine local IP address: {e}") from e

    logger.debug(f"Resolved local IP address {address}")
    return address
