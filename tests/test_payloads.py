import random
import re
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from load_errors import TokenPoolError
from payloads import (
    PICKUP_METHODS,
    TokenPool,
    notice_payload,
    order_payload,
    registration_payload,
    registration_update_payload,
    unique_id,
)


def test_unique_id_format():
    assert unique_id(3, 7, now_ms=1700000000000) == "3-7-1700000000000"


def test_unique_ids_do_not_collide_within_the_same_millisecond():
    ids = {unique_id(vu, it, now_ms=1) for vu in range(1, 51) for it in range(20)}
    assert len(ids) == 50 * 20


def test_registration_payload_fields():
    payload = registration_payload("4-2-99")
    assert payload["name"] == "压测用户_4-2-99"
    assert payload["wechat_id"] == "wx_4-2-99"
    assert re.fullmatch(r"138\d{8}", payload["phone"])
    assert re.fullmatch(r"CA\d{4}", payload["flight_no"])
    assert payload["arrival_date"] == "2026-03-01"
    assert payload["arrival_time"] == "14:30"
    assert payload["departure_city"]
    assert 0 <= payload["companions"] <= 3
    assert 1 <= payload["luggage_count"] <= 6
    assert payload["pickup_method"] in PICKUP_METHODS
    assert "4-2-99" in payload["notes"]


def test_registration_update_payload():
    payload = registration_update_payload(now_ms=123)
    assert payload["notes"] == "更新于 123"
    assert 1 <= payload["companions"] <= 3


def test_order_payload_prices_whole_yuan():
    for _ in range(50):
        payload = order_payload(42)
        assert payload["registration_id"] == 42
        assert payload["currency"] == "CNY"
        assert payload["price_total"] % 100 == 0
        assert 10_000 <= payload["price_total"] <= 59_900


def test_notice_payload_visible_for_a_day():
    now = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
    payload = notice_payload("1-0-5", now=now)
    assert payload["pickup_batch"] == "BATCH_1-0-5"
    start = datetime.fromisoformat(payload["visible_from"])
    end = datetime.fromisoformat(payload["visible_to"])
    assert start == now
    assert end - start == timedelta(hours=24)


class TestTokenPool:
    def test_empty_pool_is_rejected(self):
        with pytest.raises(TokenPoolError):
            TokenPool([])

    def test_sampling_is_uniform(self):
        pool = TokenPool(["a", "b", "c"], rng=random.Random(1234))
        counts = Counter(pool.sample() for _ in range(30_000))
        assert set(counts) == {"a", "b", "c"}
        for n in counts.values():
            assert abs(n - 10_000) < 600

    def test_tokens_are_immutable(self):
        source = ["a", "b"]
        pool = TokenPool(source)
        source.append("c")
        assert pool.tokens == ("a", "b")
        assert len(pool) == 2

    def test_from_file_tolerates_bom(self, tmp_path):
        path = tmp_path / "tokens.json"
        path.write_bytes('\ufeff[\n  "t1",\n  "t2"\n]\n'.encode("utf-8"))
        assert TokenPool.from_file(path).tokens == ("t1", "t2")

    @pytest.mark.parametrize("content", ["[]", "{\"a\": 1}", "[\"ok\", \"\"]", "[1, 2]", "not json"])
    def test_from_file_rejects_bad_content(self, tmp_path, content):
        path = tmp_path / "tokens.json"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(TokenPoolError):
            TokenPool.from_file(path)

    def test_from_file_missing(self, tmp_path):
        with pytest.raises(TokenPoolError):
            TokenPool.from_file(tmp_path / "missing.json")
