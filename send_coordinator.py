"""
send_coordinator.py - Decides when the record goes out and makes sure it goes out once.

Three triggers race for the send: the page becoming hidden, a settle delay
after the load event, and quiescence polling on resource completions. Every
trigger goes through attempt_send(), and only the attempt that wins claim()
builds and delivers the snapshot.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import config
from performance_record import PerformanceRecord, is_number
from snapshot_builder import build_snapshot

logger = logging.getLogger(__name__)

# Quiescence poll cadence, as fractions of the settle interval. Once the
# quiet gap covers NEAR_QUIET_RATIO of the interval the poll tightens.
NEAR_QUIET_RATIO = 0.75
NEAR_QUIET_POLL = 0.05
BUSY_POLL = 0.25


class SendState(str, Enum):
    COLLECTING = "collecting"
    SENT = "sent"


@dataclass
class CollectorConfig:
    allow_iframe: bool = False
    custom_mark_prefixes: list[str] = field(default_factory=list)
    custom_measure_prefixes: list[str] = field(default_factory=list)
    # set by the hidden-at-start send
    final: bool = False
    # set by the quiescence send; adds last_resource_end
    periodic: bool = False


class SendCoordinator:
    def __init__(
        self,
        page,
        record: PerformanceRecord,
        observers,
        transport,
        collector_config: Optional[CollectorConfig] = None,
        settle_interval_ms: Optional[float] = None,
    ):
        self.page = page
        self.record = record
        self.observers = observers
        self.transport = transport
        self.config = collector_config or CollectorConfig()
        self.settle_interval_ms = settle_interval_ms if settle_interval_ms is not None else config.SETTLE_INTERVAL_MS
        self.state = SendState.COLLECTING
        self.triggered_by: Optional[str] = None
        self.sent_url: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.state is SendState.SENT

    def claim(self) -> bool:
        """Check-and-set of the sent flag. Exactly one caller ever gets True."""
        if self.state is SendState.SENT:
            return False
        self.state = SendState.SENT
        return True

    def attempt_send(self, trigger: str, final: Optional[bool] = None, periodic: Optional[bool] = None) -> bool:
        if final is not None:
            self.config.final = final
        if periodic is not None:
            self.config.periodic = periodic

        if self.sent:
            self.observers.teardown()
            logger.debug(f"Send via {trigger} skipped: already sent by {self.triggered_by}")
            return False
        if self.page.ready_state == "loading":
            logger.debug(f"Send via {trigger} skipped: document still loading")
            return False

        if not self.claim():
            return False
        self.triggered_by = trigger
        self.observers.teardown()
        build_snapshot(self.record, self.page, periodic=self.config.periodic)
        logger.info(f"Sending performance record via {trigger} ({len(self.record)} fields)")
        self.sent_url = self.transport.deliver(self.record)
        return True

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._arm_visibility()
        self._arm_load_settle()
        self.poll_quiescence()

    def _arm_visibility(self) -> None:
        if self.page.visibility_state == "hidden":
            self.attempt_send("hidden", final=True)
            return

        def on_visibility_change():
            if self.page.visibility_state != "hidden":
                return
            self.page.remove_event_listener("visibilitychange", on_visibility_change)
            self.attempt_send("visibilitychange", final=False)

        self.page.add_event_listener("visibilitychange", on_visibility_change)

    def _arm_load_settle(self) -> None:
        def settle():
            self.page.set_timeout(lambda: self.attempt_send("load", periodic=False), self.settle_interval_ms)

        if self.page.ready_state == "complete":
            settle()
            return

        def on_load():
            self.page.remove_event_listener("load", on_load)
            settle()

        self.page.add_event_listener("load", on_load)

    def quiet_gap(self) -> int:
        """Milliseconds since the latest resource finished."""
        resources = self.page.get_entries_by_type("resource")
        latest = max((r.response_end for r in resources if is_number(r.response_end)), default=0)
        return math.floor(self.page.now()) - math.floor(latest)

    def poll_quiescence(self) -> None:
        if self.sent:
            return
        interval = self.settle_interval_ms
        gap = self.quiet_gap()
        if gap > interval:
            if self.attempt_send("quiescence", periodic=True) or self.sent:
                return
            # still loading; keep checking at the tight cadence
            self.page.set_timeout(self.poll_quiescence, NEAR_QUIET_POLL * interval)
            return
        delay = NEAR_QUIET_POLL if gap >= NEAR_QUIET_RATIO * interval else BUSY_POLL
        self.page.set_timeout(self.poll_quiescence, delay * interval)
