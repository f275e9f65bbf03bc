from observer_manager import ObserverManager
from page_runtime import PerformanceEntry, SimulatedPage
from performance_record import PerformanceRecord
from send_coordinator import CollectorConfig, SendCoordinator, SendState

NAV = 1_700_000_000_000


class _Transport:
    def __init__(self, page):
        self.page = page
        self.records = []
        self.sent_at = []

    def deliver(self, record):
        self.records.append(dict(record))
        self.sent_at.append(self.page.now())
        return "https://collector.example/b.gif?bilmur=1"


def _coordinator(page, **kwargs):
    transport = _Transport(page)
    coordinator = SendCoordinator(
        page,
        PerformanceRecord(),
        ObserverManager(page),
        transport,
        CollectorConfig(),
        settle_interval_ms=2000,
        **kwargs,
    )
    return coordinator, transport


def test_claim_succeeds_once():
    coordinator, _ = _coordinator(SimulatedPage())
    assert coordinator.claim() is True
    assert coordinator.claim() is False
    assert coordinator.state is SendState.SENT


def test_repeated_attempts_deliver_once():
    page = SimulatedPage()
    coordinator, transport = _coordinator(page)
    assert coordinator.attempt_send("hidden", final=True) is True
    assert coordinator.attempt_send("load") is False
    assert coordinator.attempt_send("quiescence", periodic=True) is False
    assert len(transport.records) == 1
    assert coordinator.triggered_by == "hidden"
    # skipped attempts still flip their flags
    assert coordinator.config.final is True
    assert coordinator.config.periodic is True


def test_triggers_in_the_same_tick_send_once():
    page = SimulatedPage()
    coordinator, transport = _coordinator(page)
    coordinator.start()
    # due at the same instant as the load-settle send
    page.set_timeout(lambda: page.set_visibility("hidden"), 2000)
    page.set_timeout(lambda: coordinator.attempt_send("manual"), 2000)
    page.run_until_idle()

    assert len(transport.records) == 1
    assert coordinator.triggered_by == "load"
    assert transport.sent_at == [2000]


def test_no_send_while_document_is_loading():
    page = SimulatedPage(ready_state="loading")
    coordinator, transport = _coordinator(page)
    assert coordinator.attempt_send("hidden", final=True) is False
    assert coordinator.state is SendState.COLLECTING
    assert transport.records == []


def test_hidden_transition_sends_non_final_and_detaches():
    page = SimulatedPage()
    coordinator, transport = _coordinator(page)
    coordinator.start()
    page.advance(500)
    page.set_visibility("hidden")

    assert coordinator.sent
    assert coordinator.triggered_by == "visibilitychange"
    assert coordinator.config.final is False

    page.set_visibility("visible")
    page.set_visibility("hidden")
    page.run_until_idle()
    assert len(transport.records) == 1


def test_load_settle_waits_for_load_event():
    page = SimulatedPage(ready_state="interactive", now=100)
    page.record_entry(PerformanceEntry("resource", response_end=50_000))
    coordinator, transport = _coordinator(page)
    coordinator.start()

    page.advance(1000)
    page.finish_loading()
    page.advance(1999)
    assert transport.records == []
    page.advance(1)
    assert coordinator.triggered_by == "load"
    assert transport.sent_at == [3100]


def _record_delays(page):
    delays = []
    original = page.set_timeout

    def recording(callback, delay_ms=0):
        delays.append(delay_ms)
        original(callback, delay_ms)

    page.set_timeout = recording
    return delays


def test_poll_cadence_is_coarse_while_resources_are_recent():
    page = SimulatedPage(now=1000)
    page.record_entry(PerformanceEntry("resource", response_end=900))
    coordinator, _ = _coordinator(page)
    delays = _record_delays(page)
    coordinator.poll_quiescence()
    assert delays == [500]


def test_poll_cadence_tightens_near_quiescence():
    page = SimulatedPage(now=2500)
    page.record_entry(PerformanceEntry("resource", response_end=1000))
    coordinator, _ = _coordinator(page)
    delays = _record_delays(page)
    coordinator.poll_quiescence()
    assert delays == [100]


def test_quiescence_sends_periodic_record():
    timing = {"navigationStart": NAV, "domContentLoadedEventStart": NAV + 800}
    page = SimulatedPage(now=3000, timing=timing)
    page.record_entry(PerformanceEntry("resource", response_end=700.4, decoded_body_size=10, transfer_size=30,
                                       encoded_body_size=10, duration=40))
    page.record_entry(PerformanceEntry("resource", response_end=1500, decoded_body_size=5, transfer_size=0,
                                       duration=3))
    coordinator, transport = _coordinator(page)
    coordinator.start()
    page.run_until_idle()

    assert len(transport.records) == 1
    assert coordinator.triggered_by == "quiescence"
    assert transport.sent_at == [3600]
    assert transport.records[0]["last_resource_end"] == 1500


def test_quiescence_keeps_polling_until_loading_finishes():
    page = SimulatedPage(ready_state="loading")
    page.set_timeout(page.finish_loading, 2500)
    coordinator, transport = _coordinator(page)
    coordinator.start()
    page.run_until_idle()

    assert len(transport.records) == 1
    assert coordinator.triggered_by == "quiescence"
    assert transport.sent_at == [2500]


def test_send_tears_down_observers():
    page = SimulatedPage()
    coordinator, _ = _coordinator(page)
    seen = []
    coordinator.observers.subscribe("layout-shift", seen.append)
    page.record_entry(PerformanceEntry("layout-shift", value=0.1))

    coordinator.attempt_send("hidden", final=True)

    assert len(seen) == 1
    assert coordinator.observers.active_signals() == []


def test_failing_metric_callback_does_not_block_the_send():
    page = SimulatedPage()
    coordinator, transport = _coordinator(page)

    def broken(entry):
        raise ValueError("bad entry")

    coordinator.observers.subscribe("largest-contentful-paint", broken)
    page.record_entry(PerformanceEntry("largest-contentful-paint", start_time=900))

    assert coordinator.attempt_send("hidden", final=True) is True
    assert coordinator.attempt_send("load") is False
    assert len(transport.records) == 1
    assert "largest_contentful_paint" not in transport.records[0]
