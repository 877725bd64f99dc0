"""Helpers for extracting client metadata from incoming requests."""
from __future__ import annotations

import ipaddress
import uuid
from typing import Iterable, Optional

from fastapi import Request

REQUEST_ID_HEADER = "X-Request-ID"
UNKNOWN_IP = "unknown"


def _first_hop(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    candidate = value.split(",")[0].strip()
    return candidate or None


def get_trusted_ip(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """Return the best guess of the client IP.

    Proxy headers are honoured only when at least one trusted proxy is
    configured; otherwise a client could spoof them.
    """

    if tuple(trusted_proxies):
        forwarded = _first_hop(request.headers.get("x-forwarded-for"))
        if forwarded:
            return forwarded
        cloudflare = (request.headers.get("cf-connecting-ip") or "").strip()
        if cloudflare:
            return cloudflare

    client_ip = (request.headers.get("x-client-ip") or "").strip()
    if client_ip:
        return client_ip

    if request.client is not None and request.client.host:
        return request.client.host
    return UNKNOWN_IP


def mask_ip_for_audit(ip: Optional[str]) -> str:
    """Reduce ``ip`` to its /24 (IPv4) or /64 (IPv6) network."""

    if not ip:
        return UNKNOWN_IP
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return UNKNOWN_IP

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped

    prefix = 24 if address.version == 4 else 64
    network = ipaddress.ip_network(f"{address}/{prefix}", strict=False)
    return str(network)


def _is_uuid4(value: str) -> bool:
    try:
        parsed = uuid.UUID(value)
    except ValueError:
        return False
    return parsed.version == 4 and str(parsed) == value.lower()


def get_or_create_request_id(request: Request) -> str:
    provided = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    if provided and _is_uuid4(provided):
        return provided
    return str(uuid.uuid4())


__all__ = [
    "REQUEST_ID_HEADER",
    "UNKNOWN_IP",
    "get_or_create_request_id",
    "get_trusted_ip",
    "mask_ip_for_audit",
]
