"""IP allow/deny list middleware."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable

import structlog
from starlette.requests import Request
from starlette.responses import Response

from shopguard.config.loader import IPFilterSettings
from shopguard.errors import IP_BLACKLISTED, IP_NOT_WHITELISTED, security_error
from shopguard.middleware.pipeline import Middleware, RequestContext
from shopguard.monitor import BLOCKED_REQUEST, get_monitor

logger = structlog.get_logger()

_Network = ipaddress.IPv4Network | ipaddress.IPv6Network


def _parse_networks(entries: Iterable[str], list_name: str) -> list[_Network]:
    """Parse IPs and CIDR ranges, dropping (and logging) invalid entries."""
    networks: list[_Network] = []
    for entry in entries:
        try:
            networks.append(ipaddress.ip_network(entry.strip(), strict=False))
        except ValueError:
            logger.warning("ip_filter_invalid_entry", entry=entry, list=list_name)
    return networks


def _parse_client(ip: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return None
    # ::ffff:1.2.3.4 is the same client as 1.2.3.4
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def _contains(networks: list[_Network], addr) -> bool:
    return any(addr.version == net.version and addr in net for net in networks)


class IPFilter(Middleware):
    """Reject clients on the deny list, or missing from a non-empty allow list.

    The deny list is checked first so an explicit block always wins.
    Empty lists place no restriction. Entries may be single addresses
    or CIDR ranges.
    """

    def __init__(self, config: IPFilterSettings) -> None:
        self._allow = _parse_networks(config.allow, "allow")
        self._deny = _parse_networks(config.deny, "deny")
        # Configured lists that lost every entry to parse errors must still restrict
        self._allow_configured = bool(config.allow)

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        if not self._deny and not self._allow_configured:
            return None

        addr = _parse_client(context.client_ip)

        if addr is not None and _contains(self._deny, addr):
            return self._reject(context, IP_BLACKLISTED, "ip_blacklisted")

        if self._allow_configured and (addr is None or not _contains(self._allow, addr)):
            return self._reject(context, IP_NOT_WHITELISTED, "ip_not_whitelisted")

        return None

    def _reject(self, context: RequestContext, code: str, event: str) -> Response:
        logger.error(
            event,
            client_ip=context.client_ip,
            method=context.method,
            path=context.path,
            request_id=context.request_id,
        )
        get_monitor().record(BLOCKED_REQUEST, reason=code, client_ip=context.client_ip)
        return security_error(403, "Access denied from this IP address", code)
