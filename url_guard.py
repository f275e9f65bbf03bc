from __future__ import annotations

import ipaddress
import socket
from urllib.parse import urlparse

ALLOWED_SCHEMES = ("http", "https")


def _check_scheme(url: str):
    parsed = urlparse(url)
    if parsed.scheme not in ALLOWED_SCHEMES:
        raise ValueError(f"Unsafe scheme: {parsed.scheme}")
    if not parsed.hostname:
        raise ValueError("Missing hostname")
    return parsed


def _is_internal(ip_str: str) -> bool:
    ip = ipaddress.ip_address(ip_str)
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved


def validate_endpoint(url: str) -> None:
    """Beacon endpoints only need an http(s) scheme and a host; internal collectors are fine."""
    _check_scheme(url)


def validate_url(url: str) -> None:
    """
    Checks a page URL before a headless browser is pointed at it.
    Raises ValueError for non-http(s) schemes, missing hosts, hosts that do
    not resolve and hosts that resolve to private or loopback addresses.
    """
    parsed = _check_scheme(url)
    try:
        addresses = socket.getaddrinfo(parsed.hostname, None)
    except socket.gaierror:
        # unresolvable means unverifiable
        raise ValueError(f"DNS resolution failed for {parsed.hostname}")
    for *_, sockaddr in addresses:
        if _is_internal(sockaddr[0]):
            raise ValueError(f"Target resolves to private IP: {sockaddr[0]}")
