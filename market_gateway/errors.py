# market_gateway/errors.py
from dataclasses import dataclass
from typing import Any, Dict, Optional, TYPE_CHECKING, Union

if TYPE_CHECKING:
    from .models import AggregateResult


class GatewayError(Exception):
    """Base class for every error raised by the gateway."""


class ConfigError(GatewayError):
    pass


class UnknownSourceError(GatewayError):
    def __init__(self, source: str):
        super().__init__(f"No adapter configured for source '{source}'")
        self.source = source


class ParseError(GatewayError):
    """Upstream body does not have the shape the source adapter expects."""


class UpstreamHTTPError(GatewayError):
    def __init__(self, status: int, reason: str = ""):
        super().__init__(f"HTTP {status}: {reason}".rstrip(": "))
        self.status = status
        self.reason = reason


class SourceTimeout(GatewayError):
    """A deadline passed before the source settled."""


class FetchError(GatewayError):
    """
    Raised by the orchestrator once its retry budget is spent.
    `cause` is the last failure seen.
    """
    def __init__(self, source: str, cache_key: str, attempts: int, cause: Optional[BaseException]):
        super().__init__(f"{source}: fetch failed after {attempts} attempt(s) [{cache_key}]: {cause}")
        self.source = source
        self.cache_key = cache_key
        self.attempts = attempts
        self.cause = cause

    @property
    def is_parse_failure(self) -> bool:
        return isinstance(self.cause, ParseError)


class AllSourcesFailedError(GatewayError):
    """
    Every source of a fan-out failed. `failures` maps source -> reason; for
    ticker fan-outs the placeholder-filled `result` is attached as well.
    """
    def __init__(self, symbol: str, failures: Dict[str, str], result: Optional["AggregateResult"] = None):
        super().__init__(f"All {len(failures)} sources failed for {symbol}: {failures}")
        self.symbol = symbol
        self.failures = failures
        self.result = result


# --- Attempt outcomes ---
# One HTTP attempt resolves to exactly one of these; the retry loop in
# fetcher.py matches on the type instead of on exception classes.

@dataclass(frozen=True, slots=True)
class Ok:
    payload: Any


@dataclass(frozen=True, slots=True)
class Retryable:
    cause: BaseException


@dataclass(frozen=True, slots=True)
class RateLimited:
    retry_after: float


@dataclass(frozen=True, slots=True)
class Fatal:
    cause: BaseException


Outcome = Union[Ok, Retryable, RateLimited, Fatal]
