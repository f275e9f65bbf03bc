import itertools
import json

from bs4 import BeautifulSoup

from metric_aggregators import (
    CustomTimingAggregator,
    ElementTimingAggregator,
    LargestContentfulPaintAggregator,
    LayoutShiftAggregator,
    normalize_entry_name,
)
from page_runtime import PerformanceEntry
from performance_record import PerformanceRecord, js_round


def _shift(value, recent=False):
    return PerformanceEntry("layout-shift", value=value, had_recent_input=recent)


def test_js_round_rounds_halves_up():
    assert js_round(2.5) == 3
    assert js_round(0.5) == 1
    assert js_round(-0.5) == 0
    assert js_round(1234.4999) == 1234


def test_cls_publishes_zero_before_any_shift():
    record = PerformanceRecord()
    LayoutShiftAggregator(record).publish()
    assert record["cumulative_layout_shift"] == 0


def test_cls_two_small_shifts():
    record = PerformanceRecord()
    agg = LayoutShiftAggregator(record)
    agg.on_entry(_shift(0.01))
    agg.on_entry(_shift(0.02))
    assert record["cumulative_layout_shift"] == 0.03


def test_cls_excludes_recent_input_regardless_of_order():
    values = [0.1234, 0.0005, 0.2, 0.05]
    for order in itertools.permutations(values):
        record = PerformanceRecord()
        agg = LayoutShiftAggregator(record)
        agg.on_entry(_shift(5.0, recent=True))
        for value in order:
            agg.on_entry(_shift(value))
        agg.on_entry(_shift(0.9, recent=True))
        assert record["cumulative_layout_shift"] == 0.374


def test_cls_rounds_from_running_sum_not_previous_rounding():
    record = PerformanceRecord()
    agg = LayoutShiftAggregator(record)
    for _ in range(10):
        agg.on_entry(_shift(0.0004))
    # each step alone rounds to 0.000; the sum does not
    assert record["cumulative_layout_shift"] == 0.004


def test_lcp_latest_candidate_wins():
    record = PerformanceRecord()
    agg = LargestContentfulPaintAggregator(record)
    agg.on_entry(PerformanceEntry("largest-contentful-paint", start_time=812.2))
    agg.on_entry(PerformanceEntry("largest-contentful-paint", start_time=1234.5))
    assert record["largest_contentful_paint"] == 1235


def test_element_timing_matches_by_identity():
    soup = BeautifulSoup(
        '<img data-bilmur-mie elementtiming="hero" src="a.png"><img data-bilmur-mie elementtiming="hero" src="a.png">',
        "html.parser",
    )
    first, twin = soup.find_all("img")
    matched = []
    record = PerformanceRecord()
    agg = ElementTimingAggregator(record, first, on_match=lambda: matched.append(True))

    agg.on_entry(PerformanceEntry("element", render_time=500.0, element=twin))
    assert "mie_renderTime" not in record
    assert matched == []

    agg.on_entry(PerformanceEntry("element", render_time=812.4, element=first))
    assert record["mie_renderTime"] == 812
    assert matched == [True]


def test_element_timing_without_render_time_is_omitted():
    record = PerformanceRecord()
    marker = object()
    ElementTimingAggregator(record, marker).on_entry(PerformanceEntry("element", render_time=None, element=marker))
    assert "mie_renderTime" not in record


def test_normalize_entry_name():
    assert normalize_entry_name("foo-bar") == "foo_bar"
    assert normalize_entry_name("1st paint") == "_st_paint"
    assert normalize_entry_name("app.ready:done") == "app_ready_done"
    assert normalize_entry_name("plain_name") == "plain_name"


def test_custom_mark_accepted_under_normalized_name():
    record = PerformanceRecord()
    agg = CustomTimingAggregator(record, ["foo"], ["bar"])
    agg.on_entry(PerformanceEntry("mark", name="foo-bar", start_time=123.6))
    assert json.loads(record["custom_marks"]) == {"foo_bar": 124}
    assert record["custom_measures"] == "{}"


def test_custom_measure_without_prefix_never_recorded():
    record = PerformanceRecord()
    agg = CustomTimingAggregator(record, ["foo"], ["bar"])
    agg.on_entry(PerformanceEntry("measure", name="baz", duration=50))
    assert "custom_measures" not in record

    agg.on_entry(PerformanceEntry("measure", name="bar.load", duration=10.4))
    agg.on_entry(PerformanceEntry("measure", name="other", duration=99))
    assert json.loads(record["custom_measures"]) == {"bar_load": 10}


def test_custom_marks_keep_everything_accepted_so_far():
    record = PerformanceRecord()
    agg = CustomTimingAggregator(record, ["foo", "1st"], [])
    agg.on_entry(PerformanceEntry("mark", name="foo-bar", start_time=124))
    agg.on_entry(PerformanceEntry("mark", name="foo2", start_time=5))
    # prefix matches the original name even though the stored key is normalized
    agg.on_entry(PerformanceEntry("mark", name="1st-paint", start_time=7.5))
    assert record["custom_marks"] == '{"foo_bar":124,"foo2":5,"_st_paint":8}'


def test_custom_marks_use_mark_prefixes_only():
    record = PerformanceRecord()
    agg = CustomTimingAggregator(record, ["mk"], ["ms"])
    agg.on_entry(PerformanceEntry("mark", name="ms-thing", start_time=1))
    agg.on_entry(PerformanceEntry("measure", name="mk-thing", duration=1))
    assert "custom_marks" not in record
    assert "custom_measures" not in record
