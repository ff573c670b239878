import pytest

from nodegraphs.aggregate import bucket_width, compute_series, downsample, latest_value, rate
from nodegraphs.metrics import ALL_NODES, Aggregator, Downsampler, MetricDescriptor, SourceSet, TimeWindow


def metric(**kw):
    return MetricDescriptor(name="cr.node.sql.query.count", **kw)


def test_avg_across_sources():
    raw = {"A": [(0, 10)], "B": [(0, 20)]}
    out = compute_series(metric(aggregator=Aggregator.AVG), raw, ALL_NODES)
    assert out == [(0, 15)]


def test_sum_and_max_across_sources():
    raw = {"A": [(0, 10), (10, 1)], "B": [(0, 20), (10, 5)]}
    assert compute_series(metric(aggregator=Aggregator.SUM), raw, ALL_NODES) == [(0, 30), (10, 6)]
    assert compute_series(metric(aggregator=Aggregator.MAX), raw, ALL_NODES) == [(0, 20), (10, 5)]


def test_avg_excludes_missing_sources_from_denominator():
    raw = {"A": [(0, 10), (10, 30)], "B": [(0, 20)]}
    out = compute_series(metric(aggregator=Aggregator.AVG), raw, ALL_NODES)
    assert out == [(0, 15), (10, 30)]


def test_rate_clamps_counter_resets_to_zero():
    series = [(0, 100.0), (10, 200.0), (20, 50.0), (30, 80.0)]
    assert rate(series) == [(10, 10.0), (20, 0.0), (30, 3.0)]


def test_rate_of_short_series_is_empty():
    assert rate([]) == []
    assert rate([(0, 1.0)]) == []
    out = compute_series(metric(is_rate=True), {"A": [(0, 5.0)]}, ALL_NODES)
    assert out == []


def test_rate_is_never_negative_after_aggregation():
    raw = {
        "A": [(0, 1000.0), (10, 10.0), (20, 20.0)],
        "B": [(0, 500.0), (10, 400.0), (20, 300.0)],
    }
    out = compute_series(metric(is_rate=True), raw, ALL_NODES)
    assert out == [(10, 0.0), (20, 1.0)]
    assert all(v >= 0 for _, v in out)


def test_restricts_to_named_sources():
    raw = {"1": [(0, 1.0)], "2": [(0, 2.0)], "3": [(0, 4.0)]}
    assert compute_series(metric(), raw, SourceSet(["1", "3"])) == [(0, 5.0)]


def test_no_matching_sources_yields_empty():
    raw = {"1": [(0, 1.0)]}
    assert compute_series(metric(), raw, SourceSet(["9"])) == []
    assert compute_series(metric(), raw, SourceSet([])) == []
    assert compute_series(metric(), {}, ALL_NODES) == []


def test_bucket_width_respects_target_points_and_sample_period():
    window = TimeWindow(0, 600)
    assert bucket_width(window, target_points=300, min_width=10) == 10
    assert bucket_width(window, target_points=20, min_width=10) == 30
    assert bucket_width(window, target_points=7, min_width=10) == 90
    assert bucket_width(None) is None


def test_downsample_avg_and_max():
    series = [(0, 1.0), (5, 3.0), (10, 10.0), (15, 2.0)]
    assert downsample(series, 10, Downsampler.AVG) == [(0, 2.0), (10, 6.0)]
    assert downsample(series, 10, Downsampler.MAX) == [(0, 3.0), (10, 10.0)]


def test_downsampled_sources_align_on_common_grid():
    window = TimeWindow(0, 40)
    raw = {"A": [(0, 2.0), (12, 4.0), (25, 6.0)], "B": [(3, 10.0), (18, 20.0)]}
    desc = metric(aggregator=Aggregator.SUM, downsampler=Downsampler.MAX)
    out = compute_series(desc, raw, ALL_NODES, window, target_points=2, min_width=10)
    assert out == [(0, 24.0), (20, 6.0)]


def test_output_is_monotonic():
    raw = {"A": [(30, 1.0), (10, 2.0)], "B": [(20, 3.0)]}
    out = compute_series(metric(), raw, ALL_NODES)
    times = [t for t, _ in out]
    assert times == sorted(times)


@pytest.mark.parametrize("series, expected", [([], None), ([(0, 1.0), (10, 4.0)], 4.0)])
def test_latest_value(series, expected):
    assert latest_value(series) == expected


def test_rate_skips_pairs_that_do_not_advance_in_time():
    assert rate([(0, 1.0), (0, 5.0), (10, 11.0)]) == [(10, 0.6)]
