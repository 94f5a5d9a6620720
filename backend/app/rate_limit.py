"""Rate limiting for the ZeroMiles backend.

Clients are keyed by IP. ``X-Forwarded-For`` is honored only when the direct
peer is a trusted proxy (``ZEROMILES_TRUSTED_PROXY_CIDRS``), so callers
cannot spoof their way around the limits.
"""

import ipaddress
from functools import lru_cache

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings
from .logging_config import get_logger

logger = get_logger("zeromiles.api.rate_limit")

# Per-route limits
WRITE_LIMIT = "30/minute"
READ_LIMIT = "120/minute"


@lru_cache
def trusted_networks() -> tuple:
    networks = []
    for cidr in get_settings().trusted_proxy_cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr.strip(), strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy CIDR: {cidr}")
    return tuple(networks)


def is_trusted_proxy(ip_str: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(addr in network for network in trusted_networks())


def get_client_ip(request) -> str:
    """Resolve the client IP, using the leftmost forwarded address behind a trusted proxy."""
    peer = get_remote_address(request)
    if not is_trusted_proxy(peer):
        return peer

    forwarded = request.headers.get("x-forwarded-for", "")
    client_ip = forwarded.split(",")[0].strip()
    return client_ip or peer


limiter = Limiter(key_func=get_client_ip)
