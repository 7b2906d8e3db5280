"""Source address allow-listing for admin endpoints.

Matching is exact on the normalized address; there is no CIDR or
wildcard support. Anything that does not parse as an IPv4 or IPv6
literal is rejected.
"""

from __future__ import annotations

import ipaddress
from typing import Collection, Iterable

import structlog

logger = structlog.get_logger()

LOCALHOST_ALIASES: frozenset[str] = frozenset({"127.0.0.1", "::1"})


def normalize_ip(address: str) -> str | None:
    """Return the canonical string form of an address, or None if malformed.

    Strips surrounding brackets and an IPv6 zone suffix, and unwraps
    IPv4-mapped IPv6 addresses to their IPv4 form.
    """
    if not isinstance(address, str):
        return None
    candidate = address.strip()
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]
    candidate = candidate.split("%", 1)[0]
    try:
        ip = ipaddress.ip_address(candidate)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return str(ip)


def normalize_allow_list(entries: Iterable[str]) -> frozenset[str]:
    """Normalize allow-list entries, expanding ``localhost``.

    Raises:
        ValueError: If an entry is not a valid address literal.
    """
    normalized: set[str] = set()
    for entry in entries:
        value = entry.strip()
        if value.lower() == "localhost":
            normalized.update(LOCALHOST_ALIASES)
            continue
        ip = normalize_ip(value)
        if ip is None:
            raise ValueError(f"Invalid IP address in allow-list: {entry!r}")
        normalized.add(ip)
    return frozenset(normalized)


def check_ip(address: str, allow_list: Collection[str], enabled: bool) -> bool:
    """Check a caller's address against the allow-list.

    Args:
        address: The caller's source address.
        allow_list: Permitted addresses as returned by
            ``normalize_allow_list``. Entries are compared as-is, so
            callers normalize once rather than on every request.
        enabled: When False, every address passes.

    Returns:
        True if the request may proceed. An enabled gate with an empty
        allow-list admits nobody.
    """
    if not enabled:
        return True

    normalized = normalize_ip(address)
    if normalized is None:
        logger.warning("ip_malformed", ip_address=address)
        return False

    if normalized in allow_list:
        return True

    logger.warning("ip_not_allowed", ip_address=normalized, allowed_count=len(allow_list))
    return False
