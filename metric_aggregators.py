"""
metric_aggregators.py - Metric computations feeding the performance record.

Running aggregators (layout shift, LCP, element timing, custom marks and
measures) rewrite their record fields on every entry. Navigation timing and
resource accounting run once, when the snapshot is built.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from performance_record import PerformanceRecord, is_number, js_round

NAVIGATION_CHECKPOINTS = (
    "unloadEventStart",
    "unloadEventEnd",
    "redirectStart",
    "redirectEnd",
    "fetchStart",
    "domainLookupStart",
    "domainLookupEnd",
    "connectStart",
    "connectEnd",
    "secureConnectionStart",
    "requestStart",
    "responseStart",
    "responseEnd",
    "domLoading",
    "domInteractive",
    "domContentLoadedEventStart",
    "domContentLoadedEventEnd",
    "domComplete",
    "loadEventStart",
    "loadEventEnd",
)

# Below this duration a transfer with no reported size is taken to be a cache hit.
FAST_FETCH_MS = 30


def _round(value) -> Optional[int]:
    return js_round(value) if is_number(value) else None


def _gt(value, bound) -> bool:
    return is_number(value) and value > bound


def _lt(value, bound) -> bool:
    return is_number(value) and value < bound


def _le(value, bound) -> bool:
    return is_number(value) and value <= bound


def _json(mapping: dict) -> str:
    return json.dumps(mapping, separators=(",", ":"), ensure_ascii=False)


# ----------------------------------------------------------------------
# Running aggregators
# ----------------------------------------------------------------------


class LayoutShiftAggregator:
    """
    Cumulative layout shift. Shifts that follow recent user input are ignored.
    The published value is rounded from the exact sum every time, never from
    the previous rounded value. publish() once the subscription is live so an
    unshifted page reports 0.
    """

    def __init__(self, record: PerformanceRecord):
        self.record = record
        self._values: list[float] = []

    @property
    def total(self) -> float:
        return math.fsum(self._values)

    def on_entry(self, entry) -> None:
        if entry.had_recent_input:
            return
        if is_number(entry.value):
            self._values.append(entry.value)
        self.publish()

    def publish(self) -> None:
        self.record["cumulative_layout_shift"] = js_round(self.total * 1000) / 1000


class LargestContentfulPaintAggregator:
    def __init__(self, record: PerformanceRecord):
        self.record = record

    def on_entry(self, entry) -> None:
        self.record["largest_contentful_paint"] = _round(entry.start_time)


class ElementTimingAggregator:
    """Render time of the one marked element; matched by identity, not by name."""

    def __init__(self, record: PerformanceRecord, element, on_match: Optional[Callable[[], None]] = None):
        self.record = record
        self.element = element
        self.on_match = on_match

    def on_entry(self, entry) -> None:
        if entry.element is not self.element:
            return
        self.record["mie_renderTime"] = _round(entry.render_time)
        if self.on_match is not None:
            self.on_match()


def normalize_entry_name(name: str) -> str:
    name = re.sub(r"^\d", "_", name, flags=re.ASCII)
    return re.sub(r"\W", "_", name, flags=re.ASCII)


def matches_prefix(normalized: str, original: str, prefixes: Iterable[str]) -> bool:
    return any(normalized.startswith(p) or original.startswith(p) for p in prefixes)


class CustomTimingAggregator:
    """
    User timing marks and measures whose names start with a configured prefix.

    Both mappings are re-serialized in full after every accepted entry, so
    custom_marks and custom_measures always hold everything accepted so far.
    """

    def __init__(self, record: PerformanceRecord, mark_prefixes: list[str], measure_prefixes: list[str]):
        self.record = record
        self.mark_prefixes = list(mark_prefixes)
        self.measure_prefixes = list(measure_prefixes)
        self.marks: dict[str, int] = {}
        self.measures: dict[str, int] = {}

    def on_entry(self, entry) -> None:
        original = entry.name or ""
        name = normalize_entry_name(original)
        if entry.entry_type == "mark":
            if not matches_prefix(name, original, self.mark_prefixes):
                return
            self.marks[name] = _round(entry.start_time) or 0
        elif entry.entry_type == "measure":
            if not matches_prefix(name, original, self.measure_prefixes):
                return
            self.measures[name] = _round(entry.duration) or 0
        else:
            return
        self.record["custom_marks"] = _json(self.marks)
        self.record["custom_measures"] = _json(self.measures)


# ----------------------------------------------------------------------
# Snapshot-time aggregators
# ----------------------------------------------------------------------


def _since_navigation_start(value, navigation_start) -> Optional[float]:
    if not (_gt(value, 0) and _gt(navigation_start, 0)):
        return None
    delta = value - navigation_start
    return delta if delta >= 0 else None


def apply_navigation_timing(record: PerformanceRecord, page) -> None:
    """
    Navigation checkpoints relative to navigationStart.

    API level 2 means the runtime exposes a navigation entry whose startTime is
    exactly 0. Checkpoints that are missing, zero or earlier than
    navigationStart are left out of the record.
    """
    timing = page.timing or {}
    navigation_start = timing.get("navigationStart")
    if not navigation_start:
        return

    navigation = next(iter(page.get_entries_by_type("navigation")), None)
    api_level = 2 if navigation is not None and navigation.start_time == 0 else 1

    for checkpoint in NAVIGATION_CHECKPOINTS:
        record[f"nt_{checkpoint}"] = _since_navigation_start(timing.get(checkpoint), navigation_start)

    if api_level == 2 and _gt(navigation.secure_connection_start, 0):
        record["nt_secureConnectionStart"] = math.floor(navigation.secure_connection_start)

    redirect_count = navigation.redirect_count if navigation is not None else None
    next_hop = navigation.next_hop_protocol if navigation is not None else None
    record["nt_redirectCount"] = redirect_count if redirect_count is not None else timing.get("redirectCount")
    record["nt_nextHopProtocol"] = next_hop if next_hop is not None else timing.get("nextHopProtocol")
    record["nt_api_level"] = api_level


def is_cache_served(entry) -> bool:
    """
    Whether a resource was served without a network transfer.

    Each clause covers a different way browsers and caches report this:
    an explicit cache delivery, an instant load, a conditional/partial fetch
    that moved fewer bytes than the body, or no transfer at all.
    """
    transfer = entry.transfer_size
    encoded = entry.encoded_body_size
    decoded = entry.decoded_body_size
    return (
        entry.delivery_type == "cache"
        or entry.duration == 0
        or (_gt(encoded, 0) and _gt(transfer, 0) and transfer < encoded)
        or (_le(transfer, 0) and (_gt(decoded, 0) or _lt(entry.duration, FAST_FETCH_MS)))
    )


@dataclass
class AccumulatorBucket:
    name: str
    logical_bytes: float = 0
    transferred_bytes: float = 0
    cache_bytes: float = 0

    def add(self, entry) -> None:
        decoded = entry.decoded_body_size if is_number(entry.decoded_body_size) else 0
        self.logical_bytes += decoded
        if is_cache_served(entry):
            self.cache_bytes += decoded
        else:
            self.transferred_bytes += entry.transfer_size if is_number(entry.transfer_size) else 0

    @property
    def cache_percent(self) -> Optional[int]:
        if self.logical_bytes <= 0:
            return None
        return math.floor(self.cache_bytes / self.logical_bytes * 100)

    def emit(self, record: PerformanceRecord) -> None:
        record[f"{self.name}_size"] = self.logical_bytes
        record[f"{self.name}_transferred"] = self.transferred_bytes
        record[f"{self.name}_cache_percent"] = self.cache_percent


def last_resource_end(resources: Iterable) -> int:
    return max((js_round(r.response_end) for r in resources if is_number(r.response_end)), default=0)


def apply_resource_accounting(record: PerformanceRecord, resources: list, periodic: bool = False) -> None:
    """Byte and cache accounting for resources finished before DOMContentLoaded."""
    dcl = record.get("nt_domContentLoadedEventStart")
    if not dcl:
        return

    all_resources = AccumulatorBucket("resource")
    scripts = AccumulatorBucket("js")
    blocking = AccumulatorBucket("blocking")

    for entry in resources:
        if not _lt(entry.response_end, dcl):
            continue
        all_resources.add(entry)
        if entry.initiator_type == "script":
            scripts.add(entry)
        if entry.render_blocking_status == "blocking":
            blocking.add(entry)

    for bucket in (all_resources, scripts, blocking):
        bucket.emit(record)

    if periodic:
        record["last_resource_end"] = last_resource_end(resources)
