"""
page_trace.py - Capture a real page's performance timeline with Playwright.

The trace is plain JSON that SimulatedPage.from_trace() replays, so the
collector can be run against a live site.

Usage:
    with TraceCapture() as capture:
        trace = capture.capture("https://example.com")
    page = SimulatedPage.from_trace(trace)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

try:
    from playwright.sync_api import Browser, Playwright, sync_playwright
    from playwright.sync_api import Error as PlaywrightError
    from playwright.sync_api import TimeoutError as PlaywrightTimeout
    PLAYWRIGHT_AVAILABLE = True
except ImportError:
    PLAYWRIGHT_AVAILABLE = False

import config
from attribute_reader import ELEMENT_TIMING_MARKER
from page_runtime import ALL_CAPABILITIES
from url_guard import validate_url

logger = logging.getLogger(__name__)

# Entry types the collector observes; the browser only hands these out to
# buffered observers, not through getEntriesByType().
OBSERVED_TYPES = ["layout-shift", "largest-contentful-paint", "element"]
TIMELINE_TYPES = ["navigation", "resource", "paint", "mark", "measure"]

ENTRY_FIELDS = [
    "entryType",
    "name",
    "startTime",
    "duration",
    "value",
    "hadRecentInput",
    "renderTime",
    "initiatorType",
    "renderBlockingStatus",
    "deliveryType",
    "transferSize",
    "encodedBodySize",
    "decodedBodySize",
    "responseEnd",
    "secureConnectionStart",
    "redirectCount",
    "nextHopProtocol",
]

TRACE_SNIPPET = r"""
([observedTypes, timelineTypes, fields, capabilities, marker]) => {
    const pick = (entry) => {
        const out = {};
        for (const key of fields) {
            if (entry[key] !== undefined && entry[key] !== null) out[key] = entry[key];
        }
        if (entry.entryType === "element") {
            out.isMarkedElement = !!(entry.element && entry.element.hasAttribute(marker));
        }
        return out;
    };
    return new Promise((resolve) => {
        const entries = [];
        for (const type of timelineTypes) {
            for (const entry of performance.getEntriesByType(type)) entries.push(pick(entry));
        }
        const observers = [];
        for (const type of observedTypes) {
            try {
                const po = new PerformanceObserver((list) => {
                    for (const entry of list.getEntries()) entries.push(pick(entry));
                });
                po.observe({type: type, buffered: true});
                observers.push(po);
            } catch (e) {}
        }
        // buffered entries arrive in a later task
        setTimeout(() => {
            observers.forEach((po) => po.disconnect());
            const conn = navigator.connection;
            let framed = false;
            try { framed = window.self !== window.top; } catch (e) { framed = "cross-origin"; }
            resolve({
                url: location.href,
                now: performance.now(),
                readyState: document.readyState,
                visibilityState: document.visibilityState,
                framed: framed,
                html: document.documentElement.outerHTML,
                capabilities: capabilities.filter((name) =>
                    name === "performance" ? !!window.performance : typeof window[name] !== "undefined"),
                timing: performance.timing ? performance.timing.toJSON() : {},
                connection: conn ? {effectiveType: conn.effectiveType, rtt: conn.rtt, downlink: conn.downlink} : null,
                entries: entries,
            });
        }, 100);
    });
}
"""


class TraceCaptureError(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class TraceCapture:
    def __init__(self):
        self._playwright: Optional["Playwright"] = None
        self._browser: Optional["Browser"] = None

    def __enter__(self) -> "TraceCapture":
        if not PLAYWRIGHT_AVAILABLE:
            raise TraceCaptureError("playwright_not_installed")
        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(
            headless=True,
            args=[
                "--no-sandbox",
                "--disable-setuid-sandbox",
                "--disable-dev-shm-usage",
            ],
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._browser:
            self._browser.close()
        if self._playwright:
            self._playwright.stop()

    def capture(self, url: str, timeout_ms: int = 20000) -> dict:
        if not self._browser:
            raise TraceCaptureError("browser_not_started")
        validate_url(url)

        context = self._browser.new_context(user_agent=config.USER_AGENT, locale="en-US")
        try:
            page = context.new_page()
            try:
                page.goto(url, wait_until="load", timeout=timeout_ms)
            except PlaywrightTimeout:
                logger.warning(f"Timeout loading {url}, capturing partial timeline.")
            trace = page.evaluate(
                TRACE_SNIPPET,
                [OBSERVED_TYPES, TIMELINE_TYPES, ENTRY_FIELDS, sorted(ALL_CAPABILITIES), ELEMENT_TIMING_MARKER],
            )
        except PlaywrightError as e:
            logger.error(f"Trace capture failed for {url}: {e}")
            raise TraceCaptureError("capture_failed") from e
        finally:
            context.close()

        if not isinstance(trace, dict):
            raise TraceCaptureError("unexpected_trace")
        logger.info(f"Captured {len(trace.get('entries') or [])} timeline entries from {url}")
        return trace


def capture_page_trace(url: str, timeout_ms: int = 20000) -> dict:
    with TraceCapture() as capture:
        return capture.capture(url, timeout_ms)


def save_trace(trace: dict, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(trace, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    return path


def load_trace(path: Path) -> dict:
    try:
        trace = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise TraceCaptureError("unreadable_trace") from e
    if not isinstance(trace, dict):
        raise TraceCaptureError("unexpected_trace")
    return trace
