"""
Retry supervisor: restarts the watch under exponential backoff.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    stop_never,
    stop_when_event_set,
    wait_exponential,
    wait_random,
)

from .cancel import CancelScope
from .dispatch import DispatchStage
from .errors import RetryExhaustedError
from .events import ResumePoint, WatchStatus
from .manager import StreamManager
from ...monitoring.metrics import cdc_errors_total, cdc_restarts_total
from ...utils.logging import CorrelationContext

logger = logging.getLogger(__name__)


@dataclass
class BackoffPolicy:
    """Exponential backoff between watch attempts."""
    initial_interval: float = 0.5  # First wait in seconds
    multiplier: float = 1.5  # Growth factor per attempt
    max_interval: float = 60.0  # Max seconds between attempts
    max_elapsed_time: Optional[float] = None  # None retries forever
    max_attempts: Optional[int] = None  # None retries forever
    jitter: float = 0.0  # Extra random wait, up to this many seconds

    def __post_init__(self):
        """Validate configuration values."""
        if self.initial_interval < 0:
            raise ValueError("initial_interval must be non-negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        if self.max_interval < self.initial_interval:
            raise ValueError("max_interval must not be smaller than initial_interval")
        if self.max_elapsed_time is not None and self.max_elapsed_time <= 0:
            raise ValueError("max_elapsed_time must be positive")
        if self.max_attempts is not None and self.max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if self.jitter < 0:
            raise ValueError("jitter must be non-negative")

    def wait_strategy(self):
        wait = wait_exponential(
            multiplier=self.initial_interval,
            exp_base=self.multiplier,
            max=self.max_interval,
        )
        if self.jitter:
            wait = wait + wait_random(0, self.jitter)
        return wait

    def stop_strategy(self):
        stop = stop_never
        if self.max_elapsed_time is not None:
            stop = stop | stop_after_delay(self.max_elapsed_time)
        if self.max_attempts is not None:
            stop = stop | stop_after_attempt(self.max_attempts)
        return stop


def _is_invalidated(status: Optional[WatchStatus]) -> bool:
    return status == WatchStatus.INVALIDATED


class RetrySupervisor:
    """
    Runs ``StreamManager.watch`` until it is stopped, retrying every failure.

    An invalidated watch is stopped explicitly and restarted; the restart
    resumes after the invalidate event's token. Any exception is logged and
    retried under the backoff policy.

    stop() ends the current run. A stop() issued before run() makes that
    run return at once; once a run has returned the supervisor can run again.

    Example:
        >>> supervisor = RetrySupervisor(manager, BackoffPolicy(max_interval=30))
        >>> supervisor.run(handle_event)  # blocks until supervisor.stop()
    """

    def __init__(
        self,
        manager: StreamManager,
        policy: Optional[BackoffPolicy] = None,
        on_give_up: Optional[Callable[[Optional[BaseException], int], None]] = None,
    ):
        self.manager = manager
        self.policy = policy or BackoffPolicy()
        self.on_give_up = on_give_up
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._scope: Optional[CancelScope] = None

    @property
    def collection_name(self) -> str:
        return self.manager.watcher.collection_name

    def run(self, *stages: DispatchStage, resume_point: Optional[ResumePoint] = None) -> WatchStatus:
        """
        Watch with retries (blocking).

        Args:
            stages: Dispatch stages passed to every attempt
            resume_point: Resume point for the first attempt only; later
                attempts resume from the checkpoint store

        Returns:
            WatchStatus.STOPPED once stopped

        Raises:
            RetryExhaustedError: If the backoff policy gives up
        """
        pending = [resume_point]

        def attempt() -> WatchStatus:
            with self._lock:
                if self._stopped.is_set():
                    return WatchStatus.STOPPED
                scope = CancelScope()
                self._scope = scope
            first = pending.pop() if pending else None
            return self._attempt(stages, first, scope)

        retrying = Retrying(
            wait=self.policy.wait_strategy(),
            stop=self.policy.stop_strategy() | stop_when_event_set(self._stopped),
            retry=retry_if_exception_type(Exception) | retry_if_result(_is_invalidated),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
        )

        try:
            return retrying(attempt)
        except RetryError as e:
            return self._give_up(e)
        finally:
            # the stop request is consumed by the run it ended
            with self._lock:
                self._stopped.clear()
                self._scope = None

    def _give_up(self, e: RetryError) -> WatchStatus:
        if self._stopped.is_set():
            return WatchStatus.STOPPED

        last = e.last_attempt
        logger.error(
            f"Giving up watching {self.collection_name} after {last.attempt_number} attempts",
            extra={"collection": self.collection_name, "attempt": last.attempt_number}
        )
        cause = last.exception() if last.failed else None
        if self.on_give_up is not None:
            self.on_give_up(cause, last.attempt_number)
        raise RetryExhaustedError(
            f"Watch on {self.collection_name} failed after {last.attempt_number} attempts",
            attempts=last.attempt_number,
        ) from cause

    def stop(self) -> None:
        """Stop the running watch and do not start another attempt."""
        with self._lock:
            self._stopped.set()
            scope = self._scope
        if scope is not None:
            scope.cancel()

    def _attempt(self, stages, resume_point: Optional[ResumePoint], scope: CancelScope) -> WatchStatus:
        with CorrelationContext() as attempt_id:
            try:
                status = self.manager.watch(resume_point, *stages, scope=scope)
            except Exception as e:
                logger.error(
                    f"Error while watching {self.collection_name}: {e}",
                    extra={
                        "collection": self.collection_name,
                        "attempt_id": attempt_id,
                        "error_type": type(e).__name__,
                    }
                )
                cdc_errors_total.labels(collection=self.collection_name, error_type=type(e).__name__).inc()
                cdc_restarts_total.labels(collection=self.collection_name, reason="error").inc()
                raise

            if status == WatchStatus.INVALIDATED:
                logger.info(
                    f"Watch on {self.collection_name} invalidated, stopping manager before restart",
                    extra={"collection": self.collection_name, "attempt_id": attempt_id}
                )
                self.manager.stop()
                cdc_restarts_total.labels(collection=self.collection_name, reason="invalidate").inc()
            return status

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        reason = repr(outcome.exception()) if outcome.failed else "invalidate"
        logger.warning(
            f"Restarting watch on {self.collection_name} in {retry_state.next_action.sleep:.2f}s "
            f"(attempt {retry_state.attempt_number}): {reason}",
            extra={
                "collection": self.collection_name,
                "attempt": retry_state.attempt_number,
                "delay_seconds": retry_state.next_action.sleep,
            }
        )

    def _sleep(self, seconds: float) -> None:
        # wakes up early on stop()
        self._stopped.wait(seconds)
