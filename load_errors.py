"""
Exception hierarchy shared by the pickup load test modules.

Everything raised here is a startup problem: the CLI turns any
``LoadTestError`` into exit status 2 before a single virtual user starts.
"""


class LoadTestError(Exception):
    """Base class for load test configuration and startup errors."""


class ConfigError(LoadTestError):
    """Invalid run configuration (stages, durations, config file)."""


class TokenPoolError(LoadTestError):
    """Token file missing, malformed or empty."""


class ThresholdError(LoadTestError):
    """Threshold expression cannot be parsed or applied to its metric."""


class MetricTypeError(LoadTestError):
    """A metric name was reused with a different metric kind."""
