"""Outgoing webhook URL validation.

Rejects non-HTTP schemes, plain http in production, and hosts that resolve to
private, loopback, link-local or otherwise internal addresses.
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from urllib.parse import urlsplit

from src.crm.core.errors import ValidationError


def _is_internal(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_multicast
        or address.is_reserved
        or address.is_unspecified
    )


async def resolve_host(host: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return sorted({info[4][0] for info in infos})


async def validate_webhook_url(url: str, *, require_https: bool) -> str:
    """Return the stripped URL or raise ValidationError."""
    url = url.strip()
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValidationError("Webhook URL must be a valid http(s) URL")
    if require_https and parts.scheme != "https":
        raise ValidationError("Webhook URL must use https")

    host = parts.hostname
    if host == "localhost" or host.endswith(".localhost"):
        raise ValidationError("Webhook URL must not point to an internal address")

    try:
        addresses = [ipaddress.ip_address(host)]
    except ValueError:
        try:
            resolved = await resolve_host(host)
        except OSError:
            raise ValidationError("Webhook URL host could not be resolved")
        addresses = [ipaddress.ip_address(item.split("%", 1)[0]) for item in resolved]

    if not addresses or any(_is_internal(address) for address in addresses):
        raise ValidationError("Webhook URL must not point to an internal address")
    return url
