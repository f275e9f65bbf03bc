"""
observer_manager.py - Performance observer subscriptions with cancel-once handles.

Usage:
    observers = ObserverManager(page)
    handle = observers.subscribe("layout-shift", on_shift)
    ...
    observers.teardown()   # flush pending entries, then disconnect everything
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# signal type -> interface the runtime must expose before we subscribe
SIGNAL_INTERFACES = {
    "layout-shift": "LayoutShift",
    "largest-contentful-paint": "LargestContentfulPaint",
    "element": "PerformanceElementTiming",
    "mark": "PerformanceMark",
    "measure": "PerformanceMeasure",
}


def deliver_entry(signal_type: str, on_entry: Callable, entry) -> None:
    """Feed one entry to a metric callback. A failing callback is logged and skipped."""
    try:
        on_entry(entry)
    except Exception as e:
        logger.warning(f"Entry callback for {signal_type} failed: {e}")


class ObserverHandle:
    """
    Cancellation capability for one subscription.

    Calling it flushes entries the runtime has queued but not yet delivered
    through the entry callback, then disconnects. Later calls do nothing.
    """

    def __init__(self, signal_type: str, observer, on_entry: Callable):
        self.signal_type = signal_type
        self._observer = observer
        self._on_entry = on_entry

    @property
    def active(self) -> bool:
        return self._observer is not None

    def __call__(self) -> None:
        observer = self._observer
        if observer is None:
            return
        # cleared before flushing: a callback may cancel its own subscription
        self._observer = None
        for entry in observer.take_records():
            deliver_entry(self.signal_type, self._on_entry, entry)
        observer.disconnect()


class ObserverManager:
    def __init__(self, page):
        self.page = page
        self._handles: dict[str, ObserverHandle] = {}

    def is_supported(self, signal_type: str) -> bool:
        interface = SIGNAL_INTERFACES.get(signal_type)
        return bool(interface) and self.page.supports(interface)

    def subscribe(self, signal_type: str, on_entry: Callable) -> Optional[ObserverHandle]:
        """
        Observe buffered and future entries of one type, one entry per callback.

        Returns None when the runtime lacks the signal or the subscription
        fails; callers treat that as "no data for this metric".
        """
        if not self.is_supported(signal_type):
            logger.debug(f"Signal {signal_type} not supported, skipping")
            return None

        def _deliver(entries):
            for entry in entries:
                deliver_entry(signal_type, on_entry, entry)

        try:
            observer = self.page.observe(signal_type, _deliver, buffered=True)
        except Exception as e:
            logger.debug(f"Subscribing to {signal_type} failed: {e}")
            self.cancel(signal_type)
            return None

        handle = ObserverHandle(signal_type, observer, on_entry)
        previous = self._handles.get(signal_type)
        if previous is not None:
            previous()
        self._handles[signal_type] = handle
        return handle

    def cancel(self, signal_type: str) -> None:
        handle = self._handles.pop(signal_type, None)
        if handle is not None:
            handle()

    def active_signals(self) -> list[str]:
        return [kind for kind, handle in self._handles.items() if handle.active]

    def teardown(self) -> None:
        for handle in list(self._handles.values()):
            handle()
