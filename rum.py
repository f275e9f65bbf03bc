"""
rum.py - Real-user-monitoring beacon: collector wiring and command line.

Usage:
    coordinator = start_collector(page)        # page: SimulatedPage
    page.run_until_idle()

    python rum.py --url https://example.com --dry-run
    python rum.py --trace trace.json --json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional

import config
from attribute_reader import (
    ELEMENT_TIMING_OPT_IN,
    ELEMENT_TIMING_SELECTOR,
    allows_iframe,
    dataset_from_html,
    get_data_attribute,
    parse_custom_properties,
    split_attribute_value,
)
from beacon_transport import BeaconTransport
from metric_aggregators import (
    CustomTimingAggregator,
    ElementTimingAggregator,
    LargestContentfulPaintAggregator,
    LayoutShiftAggregator,
)
from observer_manager import ObserverManager
from page_runtime import SimulatedPage
from page_trace import TraceCaptureError, capture_page_trace, load_trace, save_trace
from performance_record import PerformanceRecord
from send_coordinator import CollectorConfig, SendCoordinator

logger = logging.getLogger(__name__)


def initialize_tracking(page, record: PerformanceRecord, collector_config: CollectorConfig, observers: ObserverManager) -> None:
    """Subscribe every supported signal to its aggregator."""
    if observers.is_supported("layout-shift"):
        layout_shift = LayoutShiftAggregator(record)
        if observers.subscribe("layout-shift", layout_shift.on_entry) is not None:
            layout_shift.publish()

    if observers.is_supported("largest-contentful-paint"):
        observers.subscribe("largest-contentful-paint", LargestContentfulPaintAggregator(record).on_entry)

    if observers.is_supported("element"):
        element = page.query_selector(ELEMENT_TIMING_SELECTOR)
        if element is not None and element.has_attr(ELEMENT_TIMING_OPT_IN):
            element_timing = ElementTimingAggregator(record, element, on_match=lambda: observers.cancel("element"))
            observers.subscribe("element", element_timing.on_entry)

    if observers.is_supported("mark") and observers.is_supported("measure"):
        custom = CustomTimingAggregator(
            record,
            collector_config.custom_mark_prefixes,
            collector_config.custom_measure_prefixes,
        )
        marks = observers.subscribe("mark", custom.on_entry)
        measures = observers.subscribe("measure", custom.on_entry) if marks is not None else None
        if marks is None or measures is None:
            observers.cancel("mark")
            observers.cancel("measure")
            # cancelling flushes buffered marks; none of them count
            record["custom_marks"] = None
            record["custom_measures"] = None


def apply_page_annotations(record: PerformanceRecord, dataset: dict) -> None:
    record["provider"] = get_data_attribute(dataset, "provider")
    record["service"] = get_data_attribute(dataset, "service")
    record["custom_properties"] = parse_custom_properties(get_data_attribute(dataset, "customproperties"))


def start_collector(page, transport=None, settle_interval_ms: Optional[float] = None) -> Optional[SendCoordinator]:
    """
    Start collecting on `page`. Returns the coordinator, or None when the
    collector stays off (no performance timeline, or embedded in a frame
    without data-allow-iframe="true").
    """
    if not page.supports("performance"):
        logger.debug("No performance timeline, collector disabled")
        return None

    dataset = dataset_from_html(page.document)
    collector_config = CollectorConfig(
        allow_iframe=allows_iframe(dataset),
        custom_mark_prefixes=split_attribute_value(dataset, "customMarksPrefixes"),
        custom_measure_prefixes=split_attribute_value(dataset, "customMeasuresPrefixes"),
    )

    try:
        framed = page.is_framed()
    except Exception:
        # a cross-origin parent cannot be inspected; assume we are framed
        framed = True
    if framed and not collector_config.allow_iframe:
        logger.info("Running inside a frame without allowIframe, collector disabled")
        return None

    record = PerformanceRecord()
    observers = ObserverManager(page)
    initialize_tracking(page, record, collector_config, observers)
    apply_page_annotations(record, dataset)

    coordinator = SendCoordinator(
        page,
        record,
        observers,
        transport if transport is not None else BeaconTransport(),
        collector_config,
        settle_interval_ms,
    )
    coordinator.start()
    return coordinator


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Collect a RUM performance record for a page and send it as a beacon.")
    source = p.add_mutually_exclusive_group(required=True)
    source.add_argument("--url", help="Page to load in a headless browser")
    source.add_argument("--trace", help="Replay a previously saved trace JSON")
    p.add_argument("--save-trace", default=None, help="Write the captured trace to this path")
    p.add_argument("--timeout-ms", type=int, default=20000, help="Page load timeout for --url (default: 20000)")
    p.add_argument("--hidden-at", type=float, default=None, help="Simulate the tab going hidden after this many ms")
    p.add_argument("--settle-ms", type=float, default=config.SETTLE_INTERVAL_MS, help="Settle interval in ms")
    p.add_argument("--endpoint", default=config.BEACON_ENDPOINT, help="Beacon endpoint URL")
    p.add_argument("--dry-run", action="store_true", help="Print the beacon URL instead of sending it")
    p.add_argument("--json", action="store_true", help="Print the final record as JSON")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        if args.trace:
            trace = load_trace(args.trace)
        else:
            trace = capture_page_trace(args.url, timeout_ms=args.timeout_ms)
            if args.save_trace:
                logger.info(f"Saved trace: {save_trace(trace, args.save_trace)}")
    except TraceCaptureError as e:
        logger.error(f"Could not obtain a trace: {e.reason}")
        return 2
    except ValueError as e:
        logger.error(f"Refusing to capture: {e}")
        return 2

    page = SimulatedPage.from_trace(trace)
    transport = BeaconTransport(endpoint=args.endpoint, dry_run=args.dry_run)
    coordinator = start_collector(page, transport, settle_interval_ms=args.settle_ms)
    if coordinator is None:
        logger.info("Collector did not start for this page")
        return 1

    if args.hidden_at is not None:
        page.set_timeout(lambda: page.set_visibility("hidden"), args.hidden_at)
    page.run_until_idle()

    if not coordinator.sent:
        logger.info("No record was sent")
        return 1
    if args.json:
        print(json.dumps(dict(coordinator.record), ensure_ascii=False, indent=2))
    elif coordinator.sent_url:
        print(coordinator.sent_url)
    logger.info(f"Done via {coordinator.triggered_by}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
