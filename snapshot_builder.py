"""
snapshot_builder.py - Send-time assembly of the performance record.

Usage:
    build_snapshot(record, page, periodic=False)
"""

from __future__ import annotations

import logging

from metric_aggregators import apply_navigation_timing, apply_resource_accounting
from performance_record import PerformanceRecord, is_number, js_round

logger = logging.getLogger(__name__)

PAINT_FIELDS = {
    "first-paint": "start_render",
    "first-contentful-paint": "first_contentful_paint",
}


def apply_connection_info(record: PerformanceRecord, page) -> None:
    connection = page.connection or {}
    effective_type = connection.get("effectiveType")
    if effective_type:
        record["effective_connection_type"] = effective_type
    rtt = connection.get("rtt")
    if is_number(rtt) and rtt >= 0:
        record["rtt"] = rtt
    downlink = connection.get("downlink")
    if is_number(downlink) and downlink >= 0:
        # Mbps -> kbps
        record["downlink"] = js_round(downlink * 1000)


def apply_location(record: PerformanceRecord, page) -> None:
    location = page.location
    record["host_name"] = location.get("hostname")
    record["url_path"] = location.get("pathname")


def apply_paint_timing(record: PerformanceRecord, page) -> None:
    for entry in page.get_entries_by_type("paint"):
        field = PAINT_FIELDS.get(entry.name)
        if field and is_number(entry.start_time):
            record[field] = js_round(entry.start_time)


def build_snapshot(record: PerformanceRecord, page, periodic: bool = False) -> PerformanceRecord:
    """
    Write the send-time fields into `record` and return it.

    Sections run independently: one that fails is logged and skipped, the rest
    still contribute. Resource accounting runs last because it depends on the
    navigation timing fields.
    """
    sections = (
        ("connection", lambda: apply_connection_info(record, page)),
        ("location", lambda: apply_location(record, page)),
        ("navigation", lambda: apply_navigation_timing(record, page)),
        ("paint", lambda: apply_paint_timing(record, page)),
        ("resource", lambda: apply_resource_accounting(record, page.get_entries_by_type("resource"), periodic)),
    )
    for name, section in sections:
        try:
            section()
        except Exception as e:
            logger.warning(f"Snapshot section '{name}' failed: {e}")
    return record
