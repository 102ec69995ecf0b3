"""
Query-scoped tracing for proximity searches.

A thread-local QueryTrace records:
  - Per-stage timing (resolve, stations, dedupe, routing, enrich, ...)
  - Per-outbound-call timing (service, endpoint, elapsed_ms, HTTP status,
    provider status, whether the call was a retry)
  - An end-of-query summary line

Usage:
    from sg_trace import QueryTrace, get_trace, set_trace, clear_trace

    trace = QueryTrace(trace_id="mrt-117285")
    set_trace(trace)
    with trace.stage("routing"):
        ...
    trace.log_summary()
    clear_trace()

HTTP clients call get_trace() and record when a trace is active.  Worker
threads do not inherit thread-locals, so code that fans out must pass the
parent trace along and call set_trace() inside the worker.
"""

import logging
import threading
import time
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Records
# =============================================================================

@dataclass
class APICallRecord:
    """One outbound call (OneMap search, routing, token, conversion)."""
    service: str          # "onemap"
    endpoint: str         # "route", "search", "convert", "token"
    elapsed_ms: int
    status_code: int
    provider_status: str = ""   # "ok" | "rate_limit" | "server_error" | "cache_hit" ...
    retried: bool = False
    stage: str = ""


@dataclass
class StageRecord:
    """One pipeline stage of a query."""
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class QueryTrace:
    """Accumulates timing data for a single query."""
    trace_id: str
    started: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    _current_stage: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @contextmanager
    def stage(self, name: str):
        """Time a block as a named stage.  Exceptions are recorded and re-raised."""
        previous = self._current_stage
        self._current_stage = name
        t0 = time.time()
        error_class = ""
        error_message = ""
        try:
            yield self
        except Exception as e:
            error_class = type(e).__name__
            error_message = str(e)
            raise
        finally:
            self._current_stage = previous
            self._record_stage(name, t0, time.time(), error_class, error_message)

    def _record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error_class: str = "",
        error_message: str = "",
    ):
        with self._lock:
            api_in_stage = sum(1 for c in self.api_calls if c.stage == stage_name)
            rec = StageRecord(
                stage_name=stage_name,
                elapsed_ms=int((end_ts - start_ts) * 1000),
                api_calls_made=api_in_stage,
                error_class=error_class,
                error_message=error_message,
            )
            self.stages.append(rec)

        status = "ERR" if error_class else "OK"
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms api_calls=%d%s",
            self.trace_id,
            stage_name,
            status,
            rec.elapsed_ms,
            api_in_stage,
            err_info,
        )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
        retried: bool = False,
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            retried=retried,
            stage=self._current_stage,
        )
        # Router worker threads append concurrently.
        with self._lock:
            self.api_calls.append(rec)
        logger.debug(
            "  [api] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id,
            self._current_stage or "-",
            service,
            endpoint,
            elapsed_ms,
            status_code,
            provider_status,
        )

    def summary_dict(self) -> Dict[str, Any]:
        """Summary suitable for logging or attaching to a response."""
        errored = [s for s in self.stages if s.error_class]
        if errored and len(errored) == len(self.stages):
            outcome = "error"
        elif errored:
            outcome = "partial"
        elif not self.stages:
            outcome = "empty"
        else:
            outcome = "success"

        failed_calls = sum(
            1 for c in self.api_calls
            if c.status_code >= 400 or c.status_code == 0
        )
        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.started) * 1000),
            "total_api_calls": len(self.api_calls),
            "failed_api_calls": failed_calls,
            "retried_api_calls": sum(1 for c in self.api_calls if c.retried),
            "stages": [
                {
                    "stage": s.stage_name,
                    "elapsed_ms": s.elapsed_ms,
                    "api_calls": s.api_calls_made,
                    "error": (
                        f"{s.error_class}: {s.error_message}"
                        if s.error_class else None
                    ),
                }
                for s in self.stages
            ],
            "final_outcome": outcome,
        }

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d failed=%d "
            "retried=%d stages=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["failed_api_calls"],
            s["retried_api_calls"],
            len(s["stages"]),
            s["final_outcome"],
        )


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[QueryTrace]:
    """Get the current query's trace, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[QueryTrace]):
    """Set the trace for the current thread."""
    _trace_local.ctx = ctx


def clear_trace():
    """Clear the current trace."""
    _trace_local.ctx = None


def trace_stage(name: str):
    """Stage context on the current trace, or a no-op when none is active."""
    trace = get_trace()
    return trace.stage(name) if trace else nullcontext()
