"""
beacon_transport.py - Fire-and-forget delivery of the performance record.

Usage:
    transport = BeaconTransport()
    url = transport.deliver(record)   # None when the record had nothing to send
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote

import requests

import config
from performance_record import is_defined
from url_guard import validate_endpoint

logger = logging.getLogger(__name__)

HEADERS = {"User-Agent": config.USER_AGENT}

# Characters encodeURIComponent leaves as-is besides letters and digits.
URI_COMPONENT_SAFE = "-_.!~*'()"


def stringify(value) -> str:
    """Render a value the way the browser would when building the query string."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def encode_component(value) -> str:
    return quote(stringify(value), safe=URI_COMPONENT_SAFE)


def build_query_string(record) -> str:
    return "".join(f"&{key}={encode_component(value)}" for key, value in record.items() if is_defined(value))


def build_beacon_url(
    record,
    endpoint: str = config.BEACON_ENDPOINT,
    marker: str = config.BEACON_MARKER,
) -> Optional[str]:
    query = build_query_string(record)
    if not query:
        return None
    return f"{endpoint}?{marker}=1{query}"


class BeaconTransport:
    """
    GETs the beacon URL once and ignores the answer. Failures are logged and
    dropped; there is no retry.
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        marker: Optional[str] = None,
        timeout: Optional[float] = None,
        dry_run: bool = False,
    ):
        self.endpoint = endpoint or config.BEACON_ENDPOINT
        validate_endpoint(self.endpoint)
        self.marker = marker or config.BEACON_MARKER
        self.timeout = timeout if timeout is not None else config.BEACON_TIMEOUT
        self.dry_run = dry_run
        self._session: Optional[requests.Session] = None

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update(HEADERS)
        return self._session

    def deliver(self, record) -> Optional[str]:
        url = build_beacon_url(record, self.endpoint, self.marker)
        if url is None:
            logger.debug("Record has no defined fields, no beacon issued")
            return None
        if self.dry_run:
            logger.info(f"Dry run, beacon not sent: {url}")
            return url
        try:
            resp = self._get_session().get(url, timeout=self.timeout, stream=True)
            resp.close()
        except requests.RequestException as e:
            logger.warning(f"Beacon delivery failed: {e}")
        return url
