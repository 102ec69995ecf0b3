"""
Adaptive batch router.

Routes one origin to many destinations without hammering the routing
service.  Destinations run in fixed-size batches; members of a batch run
concurrently on a thread pool bounded to the batch size, and every
member is awaited before the inter-batch pause.  The pause grows with
the batch's failure rate and with a running count of failing batches,
and shrinks again once batches succeed:

    delay = min(max_delay, base_delay * (1 + error_rate * 2) * (1 + streak * 0.5))

Transient failures (rate limits, server errors, timeouts) are retried
per call with exponential backoff.  Every destination yields exactly one
RouteOutcome, in input order, so a bad destination never sinks the batch.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, TypeVar

from onemap_client import (
    AuthExpiredError,
    RouteOptions,
    RouteRateLimitedError,
    RouteResult,
    RouteServerError,
)
from search_config import SEARCH_CONFIG, BatchRouterConfig
from sg_trace import get_trace, set_trace

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (RouteRateLimitedError, RouteServerError)


@dataclass
class RouteOutcome:
    """Result or classified failure for one destination."""
    destination: Any
    result: Optional[RouteResult] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None   # "rate_limited" | "server_error" | "auth_expired" | "other"
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.result is not None and self.error is None


def classify_error(exc: BaseException) -> str:
    if isinstance(exc, RouteRateLimitedError):
        return "rate_limited"
    if isinstance(exc, RouteServerError):
        return "server_error"
    if isinstance(exc, AuthExpiredError):
        return "auth_expired"
    return "other"


class AdaptiveBatchRouter:
    """
    Usage:
        router = AdaptiveBatchRouter(client.compute_route)
        outcomes = router.route_all(origin, destinations, "pt")

    route_fn is called as route_fn(origin, destination, mode, options).
    sleep is injectable so tests can record delays instead of waiting.
    """

    def __init__(
        self,
        route_fn: Callable[..., RouteResult],
        config: BatchRouterConfig = SEARCH_CONFIG.router,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.route_fn = route_fn
        self.config = config
        self._sleep = sleep
        self.last_delays: List[float] = []

    def call_with_retry(self, fn: Callable[[], T]) -> T:
        """Call fn, retrying transient failures with 1s, 2s, 4s ... backoff.

        Non-transient errors propagate on the first attempt.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except RETRYABLE_ERRORS as e:
                if attempt > self.config.max_retries:
                    raise
                delay = self.config.retry_base_delay * (2 ** (attempt - 1))
                logger.info(
                    "Route call failed (%s), retry %d/%d after %.1fs",
                    classify_error(e), attempt, self.config.max_retries, delay,
                )
                self._sleep(delay)

    def _route_one(self, origin, destination, mode, options, parent_trace) -> RouteOutcome:
        set_trace(parent_trace)
        attempts = 0

        def _attempt():
            nonlocal attempts
            attempts += 1
            return self.route_fn(origin, destination, mode, options)

        try:
            result = self.call_with_retry(_attempt)
            return RouteOutcome(destination=destination, result=result, attempts=attempts)
        except Exception as e:
            kind = classify_error(e)
            logger.warning(
                "Route to %s failed after %d attempt(s): %s: %s",
                getattr(destination, "name", destination), attempts, kind, e,
                exc_info=(kind == "other"),
            )
            return RouteOutcome(
                destination=destination,
                error=str(e) or type(e).__name__,
                error_kind=kind,
                attempts=attempts,
            )

    def next_delay(self, error_rate: float, streak: int) -> float:
        cfg = self.config
        return min(
            cfg.max_delay,
            cfg.base_delay * (1 + error_rate * 2) * (1 + streak * 0.5),
        )

    def route_all(
        self,
        origin,
        destinations: Sequence,
        mode: str,
        options: Optional[RouteOptions] = None,
    ) -> List[RouteOutcome]:
        """One outcome per destination, in input order."""
        batch_size = self.config.batch_size
        batches = [
            list(destinations[i:i + batch_size])
            for i in range(0, len(destinations), batch_size)
        ]
        self.last_delays = []
        outcomes: List[RouteOutcome] = []
        if not batches:
            return outcomes

        logger.info(
            "Routing %d destinations in %d batches of %d (mode=%s)",
            len(destinations), len(batches), batch_size, mode,
        )
        parent_trace = get_trace()
        streak = 0

        with ThreadPoolExecutor(max_workers=batch_size) as pool:
            for number, batch in enumerate(batches, start=1):
                futures = [
                    pool.submit(self._route_one, origin, dest, mode, options, parent_trace)
                    for dest in batch
                ]
                batch_outcomes = [f.result() for f in futures]
                outcomes.extend(batch_outcomes)

                if number == len(batches):
                    break

                failures = sum(1 for o in batch_outcomes if not o.ok)
                error_rate = failures / len(batch)
                if error_rate > self.config.error_rate_threshold:
                    streak += 1
                else:
                    streak = max(0, streak - 1)

                delay = self.next_delay(error_rate, streak)
                self.last_delays.append(delay)
                logger.info(
                    "Batch %d/%d complete: error rate %.0f%%, waiting %.1fs",
                    number, len(batches), error_rate * 100, delay,
                )
                self._sleep(delay)

        succeeded = sum(1 for o in outcomes if o.ok)
        logger.info(
            "Batch routing complete: %d succeeded, %d failed of %d",
            succeeded, len(outcomes) - succeeded, len(outcomes),
        )
        return outcomes


def filter_within_time(outcomes: Sequence[RouteOutcome], max_minutes: float) -> List[RouteOutcome]:
    """Successful outcomes no slower than max_minutes, fastest first."""
    kept = [
        o for o in outcomes
        if o.ok and o.result.total_minutes <= max_minutes
    ]
    kept.sort(key=lambda o: o.result.total_time_seconds)
    return kept
