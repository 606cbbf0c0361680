"""
Run configuration: defaults, JSON config file loading and CLI overrides.

Config file example::

    {
      "base_url": "http://localhost:9090/api/v1",
      "tokens": "benchmark/tokens.json",
      "think_time": 0.3,
      "stages": [{"duration": "15s", "target": 20}, {"duration": "15s", "target": 0}],
      "thresholds": {"http_req_duration": ["p(95)<500"], "error_rate": ["rate<0.05"]}
    }
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from load_errors import ConfigError
from ramp_scheduler import RampSchedule, parse_duration
from thresholds import ThresholdSet

DEFAULT_BASE_URL = "http://localhost:9090/api/v1"
DEFAULT_TOKENS_FILE = "benchmark/tokens.json"
DEFAULT_THINK_TIME = 0.3

DEFAULT_STAGES: List[Dict[str, Any]] = [
    {"duration": "15s", "target": 20},   # warm-up
    {"duration": "30s", "target": 50},   # climb
    {"duration": "60s", "target": 100},  # peak
    {"duration": "30s", "target": 100},  # steady
    {"duration": "15s", "target": 0},    # cool-down
]

DEFAULT_THRESHOLDS: Dict[str, List[str]] = {
    "http_req_duration": ["p(95)<500", "p(99)<1000"],
    "error_rate": ["rate<0.05"],
    "http_req_failed": ["rate<0.05"],
}

_KNOWN_KEYS = {
    "base_url", "tokens", "think_time", "timeout", "tick_interval",
    "graceful_stop", "stages", "start_target", "thresholds", "test_name",
    "output", "verify_ssl",
}


@dataclass
class RunConfig:
    base_url: str = DEFAULT_BASE_URL
    tokens_file: str = DEFAULT_TOKENS_FILE
    stages: List[Dict[str, Any]] = field(default_factory=lambda: list(DEFAULT_STAGES))
    start_target: int = 0
    thresholds: Dict[str, List[str]] = field(default_factory=lambda: dict(DEFAULT_THRESHOLDS))
    think_time: float = DEFAULT_THINK_TIME
    timeout: float = 30.0
    tick_interval: float = 0.1
    graceful_stop: Optional[float] = None
    verify_ssl: bool = True
    test_name: str = "Pickup Service Load Test"
    output: Optional[str] = None

    def schedule(self) -> RampSchedule:
        return RampSchedule.from_config(self.stages, start_target=self.start_target)

    def threshold_set(self) -> ThresholdSet:
        return ThresholdSet.from_config(self.thresholds)

    def validate(self):
        """Parse everything once so bad input fails before the run starts."""
        self.schedule()
        self.threshold_set()
        if self.think_time < 0:
            raise ConfigError("think_time must be >= 0")
        if self.timeout <= 0:
            raise ConfigError("timeout must be > 0")
        if self.tick_interval <= 0:
            raise ConfigError("tick_interval must be > 0")
        if self.graceful_stop is not None and self.graceful_stop < 0:
            raise ConfigError("graceful_stop must be >= 0")


def load_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8-sig"))
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"config file {path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    unknown = set(data) - _KNOWN_KEYS
    if unknown:
        raise ConfigError(f"unknown config keys in {path}: {', '.join(sorted(unknown))}")
    return data


def build_config(file_data: Optional[Dict[str, Any]] = None, **overrides: Any) -> RunConfig:
    """
    Merge defaults, config file values and CLI overrides (``None`` overrides
    are ignored), then validate the result.
    """
    values: Dict[str, Any] = dict(file_data or {})
    values.update({k: v for k, v in overrides.items() if v is not None})

    config = RunConfig()
    if "base_url" in values:
        config.base_url = str(values["base_url"])
    if "tokens" in values:
        config.tokens_file = str(values["tokens"])
    if "stages" in values:
        if not isinstance(values["stages"], list):
            raise ConfigError("stages must be a list")
        config.stages = values["stages"]
    if "start_target" in values:
        start_target = values["start_target"]
        if isinstance(start_target, bool) or not isinstance(start_target, int) or start_target < 0:
            raise ConfigError(f"start_target must be a non-negative integer, got {start_target!r}")
        config.start_target = start_target
    if "thresholds" in values:
        if not isinstance(values["thresholds"], dict):
            raise ConfigError("thresholds must be an object keyed by metric name")
        config.thresholds = values["thresholds"]
    if "think_time" in values:
        config.think_time = parse_duration(values["think_time"])
    if "timeout" in values:
        config.timeout = parse_duration(values["timeout"])
    if "tick_interval" in values:
        config.tick_interval = parse_duration(values["tick_interval"])
    if "graceful_stop" in values:
        config.graceful_stop = parse_duration(values["graceful_stop"])
    if "verify_ssl" in values:
        if not isinstance(values["verify_ssl"], bool):
            raise ConfigError(f"verify_ssl must be true or false, got {values['verify_ssl']!r}")
        config.verify_ssl = values["verify_ssl"]
    if "test_name" in values:
        config.test_name = str(values["test_name"])
    if "output" in values:
        config.output = str(values["output"])

    config.validate()
    return config
