"""
TrueNAS Appliance Client

Every remote call of a configured storage goes through ApplianceClient.call
so that it is:
- Rate limited by the storage's token bucket
- Retried with exponential backoff when the error is retryable
- Bounded by the caller's total timeout, backoff included
- Counted in the client's CallMetrics
"""

import logging
import time
from typing import Any, Callable, List, Optional

from zvol_agent.config import ApiTransport, StorageConfig, settings

from .errors import (
    ApplianceError,
    NotFoundError,
    TransientError,
    TransportError,
    map_appliance_error,
)
from .metrics import CallMetrics
from .throttler import RateLimiter, RetryPolicy
from .transports import RestTransport, Transport, WebSocketTransport

logger = logging.getLogger(__name__)

JOB_SUCCESS_STATES = ("SUCCESS",)
JOB_FAILURE_STATES = ("FAILED", "ABORTED")


class ApplianceClient:
    """Transport-agnostic ``call(method, params)`` for one storage."""

    def __init__(
        self,
        transport: Transport,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        metrics: Optional[CallMetrics] = None,
        default_timeout: float = 120.0,
        job_poll_interval: float = 1.0,
        storage_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.transport = transport
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter
        self.metrics = metrics or CallMetrics()
        self.default_timeout = default_timeout
        self.job_poll_interval = job_poll_interval
        self.storage_id = storage_id
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: StorageConfig, **kwargs) -> "ApplianceClient":
        if config.api_transport == ApiTransport.WS:
            transport = WebSocketTransport(config.api_url, config.api_key, verify_ssl=config.verify_ssl)
        else:
            transport = RestTransport(config.api_url, config.api_key, verify_ssl=config.verify_ssl)

        kwargs.setdefault("retry_policy", RetryPolicy(
            max_retries=config.api_retry_max,
            base_delay=config.api_retry_delay,
            max_delay=config.api_retry_max_delay,
        ))
        kwargs.setdefault("rate_limiter", RateLimiter(config.rate_limit_calls, config.rate_limit_window))
        kwargs.setdefault("default_timeout", config.call_timeout)
        kwargs.setdefault("job_poll_interval", settings.job_poll_interval)
        kwargs.setdefault("storage_id", config.storage_id)
        return cls(transport, **kwargs)

    def call(
        self,
        method: str,
        params: Optional[List[Any]] = None,
        *,
        timeout: Optional[float] = None,
        wait_job: bool = False,
    ) -> Any:
        """
        Call a middleware method.

        Args:
            method: JSON-RPC method name, e.g. ``pool.dataset.create``
            params: positional parameters
            timeout: total wall-clock bound including backoff (default_timeout if None)
            wait_job: if the result is a job id, wait for the job and return its result

        Raises:
            TransportError: retries exhausted or deadline reached
            ApplianceError: any non-retryable classified error
        """
        params = list(params) if params is not None else []
        timeout = timeout or self.default_timeout
        deadline = self._clock() + timeout
        attempt = 0

        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                self.metrics.record_failure(method)
                raise TransportError(f"{method}: deadline of {timeout:.1f}s exceeded", error_code="DEADLINE")

            if self.rate_limiter is not None:
                try:
                    self.rate_limiter.acquire(deadline=deadline)
                except TransportError:
                    self.metrics.record_failure(method)
                    raise
                remaining = deadline - self._clock()

            self.metrics.record_attempt(method)
            start = self._clock()
            try:
                result = self.transport.request(method, params, remaining)
            except TransientError as e:
                if not self.retry_policy.should_retry(e, attempt):
                    self.metrics.record_failure(method)
                    logger.error(f"{method} failed after {attempt + 1} attempt(s): {e.message}")
                    raise TransportError(
                        f"{method} failed after {attempt + 1} attempt(s): {e.message}",
                        error_code=e.error_code,
                        status_code=e.status_code,
                    ) from e

                delay = self.retry_policy.delay(attempt)
                if self._clock() + delay >= deadline:
                    self.metrics.record_failure(method)
                    raise TransportError(
                        f"{method}: deadline of {timeout:.1f}s reached while backing off ({e.message})",
                        error_code="DEADLINE",
                        status_code=e.status_code,
                    ) from e

                attempt += 1
                self.metrics.record_retry(method)
                logger.warning(
                    f"{method} attempt {attempt}/{self.retry_policy.max_retries + 1} failed "
                    f"({e.message}); backing off {delay:.2f}s"
                )
                self._sleep(delay)
                continue
            except ApplianceError as e:
                e.attempts = attempt + 1
                self.metrics.record_failure(method)
                raise

            self.metrics.record_success(method, (self._clock() - start) * 1000)
            break

        if wait_job and isinstance(result, int) and not isinstance(result, bool):
            return self.wait_for_job(result, timeout=max(deadline - self._clock(), self.job_poll_interval))
        return result

    def wait_for_job(self, job_id: int, timeout: Optional[float] = None) -> Any:
        """
        Poll core.get_jobs until the job finishes.

        Returns the job result; raises the classified job error on failure
        and TransportError on timeout.
        """
        timeout = timeout or settings.job_timeout
        deadline = self._clock() + timeout
        logger.debug(f"Waiting for appliance job {job_id}")

        while True:
            jobs = self.call("core.get_jobs", [[["id", "=", job_id]]])
            if not jobs:
                raise NotFoundError(f"Job {job_id} not found", error_code="ENOENT")
            job = jobs[0]
            state = job.get("state")

            if state in JOB_SUCCESS_STATES:
                return job.get("result")
            if state in JOB_FAILURE_STATES:
                error = job.get("error") or f"Job {job_id} {state.lower()}"
                exc_info = job.get("exc_info") or {}
                if isinstance(exc_info, dict) and exc_info.get("errname"):
                    raise map_appliance_error({"errname": exc_info["errname"], "reason": error})
                raise map_appliance_error(error)

            if self._clock() >= deadline:
                raise TransportError(f"Timed out waiting for job {job_id} (state {state})", error_code="JOB_TIMEOUT")
            self._sleep(self.job_poll_interval)

    def ping(self) -> bool:
        return self.call("core.ping") == "pong"

    def close(self):
        self.transport.close()
