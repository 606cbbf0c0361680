"""
Payload & identity generators for the Pickup Service API, plus the token pool.

Every unique field is derived from ``unique_id(vu, iteration)`` so that two
iterations never submit systematically colliding identifiers, even across
concurrently running virtual users.
"""

import json
import random
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from faker import Faker

from load_errors import TokenPoolError

fake = Faker("zh_CN")

PICKUP_METHODS = ["group", "private", "shuttle"]
ARRIVAL_DATE = "2026-03-01"
ARRIVAL_TIME = "14:30"
NOTICE_VISIBILITY = timedelta(hours=24)


def unique_id(vu: int, iteration: int, now_ms: Optional[int] = None) -> str:
    """``{vu}-{iteration}-{epoch ms}``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{vu}-{iteration}-{now_ms}"


def _flight_no() -> str:
    return f"CA{random.randint(1000, 9999)}"


def registration_payload(uid: str) -> Dict[str, Any]:
    return {
        "name": f"压测用户_{uid}",
        "phone": f"138{random.randint(0, 99_999_999):08d}",
        "wechat_id": f"wx_{uid}",
        "flight_no": _flight_no(),
        "arrival_date": ARRIVAL_DATE,
        "arrival_time": ARRIVAL_TIME,
        "departure_city": fake.city(),
        "companions": random.randint(0, 3),
        "luggage_count": random.randint(1, 6),
        "pickup_method": random.choice(PICKUP_METHODS),
        "notes": f"k6压测数据 {uid}",
    }


def registration_update_payload(now_ms: Optional[int] = None) -> Dict[str, Any]:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return {
        "notes": f"更新于 {now_ms}",
        "companions": random.randint(1, 3),
    }


def order_payload(registration_id: Any) -> Dict[str, Any]:
    # Prices are whole yuan expressed in fen.
    return {
        "registration_id": registration_id,
        "price_total": random.randint(100, 599) * 100,
        "currency": "CNY",
    }


def notice_payload(uid: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    return {
        "flight_no": _flight_no(),
        "terminal": "T3",
        "pickup_batch": f"BATCH_{uid}",
        "arrival_airport": "首都国际机场",
        "meeting_point": "T3到达层3号门",
        "guide_text": "请在到达层3号门集合",
        "map_url": "https://example.com/map",
        "contact_name": "压测调度员",
        "contact_phone": "13900000000",
        "visible_from": now.isoformat(),
        "visible_to": (now + NOTICE_VISIBILITY).isoformat(),
    }


# =============================================================================
# TOKEN POOL
# =============================================================================

class TokenPool:
    """Immutable, pre-loaded credentials sampled uniformly per iteration."""

    def __init__(self, tokens: Iterable[str], rng: Optional[random.Random] = None):
        self._tokens: Tuple[str, ...] = tuple(tokens)
        if not self._tokens:
            raise TokenPoolError("token pool is empty")
        self._rng = rng or random.Random()

    def __len__(self) -> int:
        return len(self._tokens)

    @property
    def tokens(self) -> Tuple[str, ...]:
        return self._tokens

    def sample(self) -> str:
        return self._tokens[self._rng.randrange(len(self._tokens))]

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "TokenPool":
        """Load a JSON array of token strings. A UTF-8 BOM is tolerated."""
        path = Path(path)
        try:
            raw = path.read_text(encoding="utf-8-sig").strip()
        except OSError as e:
            raise TokenPoolError(f"cannot read token file {path}: {e}") from e

        try:
            tokens = json.loads(raw)
        except json.JSONDecodeError as e:
            raise TokenPoolError(f"token file {path} is not valid JSON: {e}") from e

        if not isinstance(tokens, list):
            raise TokenPoolError(f"token file {path} must contain a JSON array")
        if not all(isinstance(t, str) and t for t in tokens):
            raise TokenPoolError(f"token file {path} must contain non-empty strings only")

        return cls(tokens)
