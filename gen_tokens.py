#!/usr/bin/env python3
"""
Token generator for local load test runs.

Issues HS256 bearer tokens for passenger accounts ``1..count`` and prints them
as a JSON array, the format ``--tokens`` expects.

Usage:
    python gen_tokens.py 50 > benchmark/tokens.json
    python gen_tokens.py 200 --secret "$JWT_SECRET" -o benchmark/tokens.json
"""

import argparse
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import jwt

DEFAULT_SECRET = "pickup-secret-key"
DEFAULT_COUNT = 50
DEFAULT_TTL = timedelta(hours=24)
ISSUER = "pickup"
ROLE = "passenger"


def token_claims(user_id: int, now: datetime, ttl: timedelta = DEFAULT_TTL) -> Dict[str, Any]:
    issued = int(now.timestamp())
    return {
        "user_id": user_id,
        "role": ROLE,
        "iss": ISSUER,
        "sub": str(user_id),
        "iat": issued,
        "exp": int((now + ttl).timestamp()),
        "nbf": issued,
    }


def generate_tokens(
    count: int = DEFAULT_COUNT,
    secret: str = DEFAULT_SECRET,
    ttl: timedelta = DEFAULT_TTL,
    now: Optional[datetime] = None,
) -> List[str]:
    if count <= 0:
        raise ValueError("count must be a positive integer")
    now = now or datetime.now(timezone.utc)
    return [
        jwt.encode(token_claims(user_id, now, ttl), secret, algorithm="HS256")
        for user_id in range(1, count + 1)
    ]


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}") from e
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value!r}")
    return number


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Generate HS256 bearer tokens for the pickup load test")
    parser.add_argument("count", nargs="?", type=_positive_int, default=DEFAULT_COUNT,
                        help=f"Number of tokens (default: {DEFAULT_COUNT})")
    parser.add_argument("--secret", default=DEFAULT_SECRET, help="HMAC signing secret")
    parser.add_argument("--ttl-hours", type=_positive_int, default=24, help="Token lifetime in hours")
    parser.add_argument("--output", "-o", help="Write to this file instead of stdout")
    args = parser.parse_args(argv)

    tokens = generate_tokens(args.count, args.secret, timedelta(hours=args.ttl_hours))
    payload = json.dumps(tokens, indent=2)

    if args.output:
        path = Path(args.output)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(payload + "\n", encoding="utf-8")
    else:
        print(payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
