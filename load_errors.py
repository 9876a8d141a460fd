"""
Error taxonomy for the load generator.

Only InvalidConfig and SetupFailed ever abort a run. Transport errors and
failed checks are recorded per request and stay inside the iteration that
produced them.
"""

from enum import Enum
from typing import Iterable, Optional


class LoadTestError(Exception):
    """Base class for all load generator errors."""


class InvalidConfig(LoadTestError):
    """A scenario, rate profile or setting is invalid. Raised before any traffic."""


class SetupFailed(LoadTestError):
    """The setup stage failed. Fatal for the whole run."""


class TransportErrorKind(Enum):
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    DNS_FAILURE = "dns_failure"
    OTHER = "other"


class TransportError(LoadTestError):
    """The request never produced an HTTP response."""

    def __init__(self, kind: TransportErrorKind, message: str = "", latency_ms: float = 0.0):
        super().__init__(f"{kind.value}: {message}" if message else kind.value)
        self.kind = kind
        self.latency_ms = latency_ms


class CheckFailed(LoadTestError):
    """One or more fatal checks evaluated to False."""

    def __init__(self, checks: Iterable[str], scenario: Optional[str] = None):
        self.checks = tuple(checks)
        self.scenario = scenario
        where = f" in {scenario}" if scenario else ""
        super().__init__(f"check(s) failed{where}: {', '.join(self.checks)}")
