"""
page_runtime.py - Single-threaded page model the collector runs against.

Mirrors the slice of the browser surface the beacon needs: a clock, timers,
document/window events, the performance timeline with buffered observers,
legacy navigation timing, network information and the parsed document.

Usage:
    page = SimulatedPage(html, timing={"navigationStart": 1_700_000_000_000})
    page.record_entry(PerformanceEntry("layout-shift", value=0.01))
    page.advance(2500)
"""

from __future__ import annotations

import heapq
import itertools
import logging
from dataclasses import dataclass, fields
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from attribute_reader import ELEMENT_TIMING_SELECTOR

logger = logging.getLogger(__name__)

ALL_CAPABILITIES = frozenset(
    {
        "performance",
        "LayoutShift",
        "LargestContentfulPaint",
        "PerformanceElementTiming",
        "PerformanceMark",
        "PerformanceMeasure",
    }
)


def _snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


@dataclass
class PerformanceEntry:
    """One timeline entry. Fields a given entry type lacks stay None."""

    entry_type: str
    name: str = ""
    start_time: Optional[float] = 0.0
    duration: Optional[float] = 0.0
    # layout-shift
    value: Optional[float] = None
    had_recent_input: bool = False
    # element / largest-contentful-paint
    render_time: Optional[float] = None
    element: Any = None
    # resource / navigation
    initiator_type: Optional[str] = None
    render_blocking_status: Optional[str] = None
    delivery_type: Optional[str] = None
    transfer_size: Optional[float] = None
    encoded_body_size: Optional[float] = None
    decoded_body_size: Optional[float] = None
    response_end: Optional[float] = None
    secure_connection_start: Optional[float] = None
    redirect_count: Optional[int] = None
    next_hop_protocol: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "PerformanceEntry":
        """Build from a serialized browser entry (camelCase keys); unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            attr = _snake(str(key))
            if attr in known and attr != "element":
                kwargs[attr] = value
        if "entry_type" not in kwargs:
            raise ValueError("entry is missing entryType")
        return cls(**kwargs)


class PerformanceObserver:
    """Observer bound to one entry type. Entries are delivered in a later task, in batches."""

    def __init__(self, page: "SimulatedPage", entry_type: str, callback: Callable[[list], None]):
        self._page = page
        self.entry_type = entry_type
        self._callback = callback
        self._queue: list[PerformanceEntry] = []
        self._scheduled = False
        self.connected = True

    def _enqueue(self, entry: PerformanceEntry) -> None:
        if not self.connected:
            return
        self._queue.append(entry)
        if not self._scheduled:
            self._scheduled = True
            self._page.set_timeout(self._deliver, 0)

    def _deliver(self) -> None:
        self._scheduled = False
        if not self.connected:
            return
        entries = self.take_records()
        if entries:
            self._callback(entries)

    def take_records(self) -> list[PerformanceEntry]:
        entries, self._queue = self._queue, []
        return entries

    def disconnect(self) -> None:
        self.connected = False
        self._queue = []
        self._page._detach_observer(self)


class SimulatedPage:
    """
    Deterministic page with a virtual millisecond clock.

    Timers due at the same instant fire in the order they were scheduled.
    `framed` may be True, False or "cross-origin" (reading the frame relation
    then raises, as a browser does for cross-origin parents).
    """

    def __init__(
        self,
        html: str = "",
        *,
        url: str = "https://example.com/",
        now: float = 0.0,
        ready_state: str = "complete",
        visibility_state: str = "visible",
        timing: Optional[dict] = None,
        connection: Optional[dict] = None,
        capabilities=ALL_CAPABILITIES,
        framed=False,
    ):
        self.document = BeautifulSoup(html or "", "html.parser")
        self.url = url
        self.ready_state = ready_state
        self.visibility_state = visibility_state
        self.timing = dict(timing or {})
        self.connection = dict(connection) if connection is not None else None
        self.capabilities = frozenset(capabilities)
        self.framed = framed
        # entry types whose observe() call should raise
        self.failing_observers: set[str] = set()

        self._now = float(now)
        self._entries: dict[str, list[PerformanceEntry]] = {}
        self._observers: list[PerformanceObserver] = []
        self._listeners: dict[str, list[Callable[[], None]]] = {}
        self._timers: list = []
        self._seq = itertools.count()

    # ------------------------------------------------------------------
    # Construction from a captured trace
    # ------------------------------------------------------------------

    @classmethod
    def from_trace(cls, trace: dict) -> "SimulatedPage":
        page = cls(
            trace.get("html") or "",
            url=trace.get("url") or "https://example.com/",
            now=float(trace.get("now") or 0.0),
            ready_state=trace.get("readyState") or "complete",
            visibility_state=trace.get("visibilityState") or "visible",
            timing=trace.get("timing") or {},
            connection=trace.get("connection"),
            capabilities=trace.get("capabilities") or ALL_CAPABILITIES,
            framed=trace.get("framed", False),
        )
        marked = page.query_selector(ELEMENT_TIMING_SELECTOR)
        for raw in trace.get("entries") or []:
            try:
                entry = PerformanceEntry.from_dict(raw)
            except (TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed trace entry: {e}")
                continue
            if entry.entry_type == "element" and raw.get("isMarkedElement"):
                entry.element = marked
            page.record_entry(entry)
        return page

    # ------------------------------------------------------------------
    # Clock and timers
    # ------------------------------------------------------------------

    def now(self) -> float:
        return self._now

    def set_timeout(self, callback: Callable[[], None], delay_ms: float = 0) -> None:
        due = self._now + max(float(delay_ms or 0), 0.0)
        heapq.heappush(self._timers, (due, next(self._seq), callback))

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    def advance(self, ms: float) -> None:
        """Move the clock forward by `ms`, firing every timer that falls due on the way."""
        target = self._now + ms
        while self._timers and self._timers[0][0] <= target:
            due, _, callback = heapq.heappop(self._timers)
            self._now = max(self._now, due)
            callback()
        self._now = target

    def run_until_idle(self, limit_ms: float = 60_000) -> None:
        deadline = self._now + limit_ms
        while self._timers and self._timers[0][0] <= deadline:
            due, _, callback = heapq.heappop(self._timers)
            self._now = max(self._now, due)
            callback()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def add_event_listener(self, event_type: str, handler: Callable[[], None]) -> None:
        self._listeners.setdefault(event_type, []).append(handler)

    def remove_event_listener(self, event_type: str, handler: Callable[[], None]) -> None:
        handlers = self._listeners.get(event_type) or []
        if handler in handlers:
            handlers.remove(handler)

    def dispatch_event(self, event_type: str) -> None:
        for handler in list(self._listeners.get(event_type) or []):
            handler()

    def set_visibility(self, state: str) -> None:
        if state == self.visibility_state:
            return
        self.visibility_state = state
        self.dispatch_event("visibilitychange")

    def finish_loading(self) -> None:
        self.ready_state = "complete"
        self.dispatch_event("load")

    # ------------------------------------------------------------------
    # Document and environment
    # ------------------------------------------------------------------

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def is_framed(self) -> bool:
        if self.framed == "cross-origin":
            raise PermissionError("Blocked a frame from accessing a cross-origin frame")
        return bool(self.framed)

    def query_selector(self, selector: str):
        return self.document.select_one(selector)

    @property
    def location(self) -> dict:
        parsed = urlparse(self.url)
        return {"hostname": parsed.hostname or "", "pathname": parsed.path or "/"}

    # ------------------------------------------------------------------
    # Performance timeline
    # ------------------------------------------------------------------

    def record_entry(self, entry: PerformanceEntry) -> None:
        self._entries.setdefault(entry.entry_type, []).append(entry)
        for observer in list(self._observers):
            if observer.entry_type == entry.entry_type:
                observer._enqueue(entry)

    def get_entries_by_type(self, entry_type: str) -> list[PerformanceEntry]:
        return list(self._entries.get(entry_type) or [])

    def observe(self, entry_type: str, callback: Callable[[list], None], buffered: bool = True) -> PerformanceObserver:
        if entry_type in self.failing_observers:
            raise TypeError(f"Failed to execute 'observe': {entry_type} is not supported")
        observer = PerformanceObserver(self, entry_type, callback)
        self._observers.append(observer)
        if buffered:
            for entry in self._entries.get(entry_type) or []:
                observer._enqueue(entry)
        return observer

    def _detach_observer(self, observer: PerformanceObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)
