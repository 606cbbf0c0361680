import random
import threading

import pytest

from load_errors import MetricTypeError
from load_metrics import COUNTER, GAUGE, RATE, TREND, MetricsCollector, ReservoirSampler


class TestReservoirSampler:
    def test_percentiles_interpolate_between_ranks(self):
        sampler = ReservoirSampler()
        for v in range(1, 101):
            sampler.add(v)
        assert sampler.percentile(0) == 1
        assert sampler.percentile(50) == pytest.approx(50.5)
        assert sampler.percentile(100) == 100

    def test_percentile_is_non_decreasing(self):
        rng = random.Random(7)
        sampler = ReservoirSampler()
        for _ in range(2000):
            sampler.add(rng.expovariate(1 / 120))
        values = [sampler.percentile(p) for p in range(0, 101)]
        assert values == sorted(values)

    def test_empty_and_out_of_range(self):
        sampler = ReservoirSampler()
        assert sampler.percentile(95) is None
        sampler.add(1.0)
        with pytest.raises(ValueError):
            sampler.percentile(101)

    def test_memory_is_bounded(self):
        sampler = ReservoirSampler(size=100, rng=random.Random(1))
        for v in range(10_000):
            sampler.add(v)
        assert len(sampler.reservoir) == 100
        assert sampler.count == 10_000


class TestMetricsCollector:
    def test_error_rate_is_failed_over_checked(self):
        m = MetricsCollector()
        for i in range(100):
            m.add_rate("error_rate", i < 2)
        assert m.error_rate == pytest.approx(0.02)

    def test_error_rate_without_samples_is_zero(self):
        assert MetricsCollector().error_rate == 0.0

    def test_kind_mismatch_is_rejected(self):
        m = MetricsCollector()
        m.register("create_order_duration", TREND)
        with pytest.raises(MetricTypeError):
            m.add_counter("create_order_duration")

    def test_counters_only_go_up(self):
        m = MetricsCollector()
        with pytest.raises(ValueError):
            m.add_counter("http_reqs", -1)

    def test_trend_aggregates(self):
        m = MetricsCollector()
        for v in (10, 20, 30, 40):
            m.add_trend("http_req_duration", v)
        assert m.aggregate("http_req_duration", "avg") == 25
        assert m.aggregate("http_req_duration", "min") == 10
        assert m.aggregate("http_req_duration", "max") == 40
        assert m.aggregate("http_req_duration", "med") == pytest.approx(25)
        assert m.aggregate("http_req_duration", "count") == 4
        assert m.aggregate("http_req_duration", "p(100)") == 40

    def test_empty_trend_has_no_aggregate(self):
        m = MetricsCollector()
        m.register("create_order_duration", TREND)
        assert m.aggregate("create_order_duration", "p(95)") is None
        assert m.aggregate("create_order_duration", "count") == 0
        assert m.sample_count("create_order_duration") == 0

    def test_counter_rate_uses_run_duration(self):
        m = MetricsCollector()
        m.add_counter("http_reqs", 50)
        m.start_time, m.end_time = 100.0, 110.0
        assert m.aggregate("http_reqs", "rate") == pytest.approx(5.0)
        assert m.aggregate("http_reqs", "count") == 50

    def test_gauge_keeps_last_and_extremes(self):
        m = MetricsCollector()
        for v in (3, 9, 4):
            m.set_gauge("vus", v)
        assert m.gauge("vus") == 4
        assert m.aggregate("vus", "max") == 9
        assert m.aggregate("vus", "min") == 3

    def test_checks_feed_checks_rate(self):
        m = MetricsCollector()
        m.add_check("health status 200", True)
        m.add_check("health status 200", True)
        m.add_check("health body ok", False)
        assert m.checks() == {
            "health status 200": {"passes": 2, "fails": 0},
            "health body ok": {"passes": 0, "fails": 1},
        }
        assert m.rate("checks") == pytest.approx(2 / 3)

    def test_error_labels_are_truncated(self):
        m = MetricsCollector()
        m.record_error("x" * 80)
        m.record_error("Timeout")
        assert m.errors() == {"x" * 50: 1, "Timeout": 1}

    def test_concurrent_updates_are_not_lost(self):
        m = MetricsCollector()

        def worker():
            for i in range(5000):
                m.add_counter("successful_requests")
                m.add_trend("http_req_duration", i % 100)
                m.add_rate("error_rate", False)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert m.counter("successful_requests") == 40_000
        assert m.sample_count("http_req_duration") == 40_000
        assert m.sample_count("error_rate") == 40_000

    def test_snapshot_shape(self):
        m = MetricsCollector()
        m.register("create_order_duration", TREND)
        m.add_trend("http_req_duration", 12.5)
        m.add_rate("error_rate", False)
        m.add_counter("successful_requests")
        m.set_gauge("vus", 2)

        snap = m.snapshot()
        assert snap["create_order_duration"] == {
            "type": TREND,
            "values": {"count": 0, "avg": 0, "min": 0, "med": 0, "max": 0, "p(90)": 0, "p(95)": 0, "p(99)": 0},
        }
        assert snap["http_req_duration"]["values"]["p(95)"] == 12.5
        assert snap["error_rate"] == {"type": RATE, "values": {"rate": 0, "passes": 0, "fails": 1}}
        assert snap["successful_requests"]["type"] == COUNTER
        assert snap["vus"]["type"] == GAUGE

    def test_trend_view(self):
        m = MetricsCollector()
        assert m.trend("never_recorded")["count"] == 0
        m.add_trend("get_registration_duration", 5)
        m.add_trend("get_registration_duration", 15)
        view = m.trend("get_registration_duration")
        assert view["count"] == 2
        assert view["avg"] == 10
        assert view["max"] == 15

    def test_percentiles_in_one_pass_match_single_queries(self):
        m = MetricsCollector()
        rng = random.Random(3)
        for _ in range(500):
            m.add_trend("http_req_duration", rng.uniform(0, 800))
        p95, p99 = m.percentiles("http_req_duration", (95, 99))
        assert p95 == m.percentile("http_req_duration", 95)
        assert p99 == m.percentile("http_req_duration", 99)
        assert m.percentiles("never_recorded", (95, 99)) == [None, None]
