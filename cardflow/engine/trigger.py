"""Continuation trigger: hands a run off to a fresh executor invocation.

Work still in flight when a request handler returns may be dropped by the
hosting environment, so the two hand-offs have different lifetime contracts:

* ``trigger_initial`` is awaited by the run-creation path. It returns only
  once the continuation endpoint accepted the request (not once the item is
  done), and raises if it did not.
* ``trigger_next`` is issued by the executor at the end of a step, from a
  handler that is still running. It does not wait for the response.
"""

import hmac
import logging
import threading
from typing import Optional
from uuid import UUID

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from cardflow.config import settings
from cardflow.engine.errors import ContinuationError

logger = logging.getLogger(__name__)

SECRET_HEADER = "x-batch-secret"

# Errors raised before the request could have reached the endpoint
_UNDELIVERED_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


def process_next_url(run_id: UUID, base_url: Optional[str] = None) -> str:
    base = (base_url or settings.APP_BASE_URL).rstrip("/")
    return f"{base}/runs/{run_id}/process-next"


def validate_batch_secret(header_secret: Optional[str]) -> bool:
    """Check the shared secret on an incoming continuation request."""
    if not header_secret or not settings.BATCH_SECRET:
        return False
    return hmac.compare_digest(header_secret.encode(), settings.BATCH_SECRET.encode())


class ContinuationTrigger:
    """Interface for the two hand-off operations."""

    def trigger_initial(self, run_id: UUID) -> None:
        raise NotImplementedError

    def trigger_next(self, run_id: UUID) -> None:
        raise NotImplementedError


class HttpContinuationTrigger(ContinuationTrigger):
    """Posts to the internal ``process-next`` endpoint over HTTP."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        secret: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url or settings.APP_BASE_URL
        self.secret = secret or settings.BATCH_SECRET
        self.timeout = timeout or settings.TRIGGER_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.TRIGGER_MAX_ATTEMPTS
        self.transport = transport

    def _post(self, run_id: UUID) -> httpx.Response:
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            return client.post(
                process_next_url(run_id, self.base_url),
                headers={
                    "Content-Type": "application/json",
                    SECRET_HEADER: self.secret,
                },
            )

    def trigger_initial(self, run_id: UUID) -> None:
        """Send the first hand-off and wait for the endpoint to accept it.

        Raises:
            ContinuationError: transport failure or non-2xx response.
        """
        logger.info(f"Triggering initial process-next for run {run_id}")
        try:
            response = self._post(run_id)
        except httpx.HTTPError as e:
            raise ContinuationError(f"Could not reach continuation endpoint: {e}") from e

        if not response.is_success:
            raise ContinuationError(
                f"Continuation endpoint rejected run {run_id}: "
                f"{response.status_code} {response.text[:200]}"
            )

    def trigger_next(self, run_id: UUID) -> None:
        """Dispatch the next hand-off without waiting for it."""
        logger.info(f"Triggering next process-next for run {run_id}")
        thread = threading.Thread(
            target=self._send_next,
            args=(run_id,),
            name=f"trigger-next-{run_id}",
            daemon=True,
        )
        thread.start()

    def _send_next(self, run_id: UUID) -> None:
        # Only connect-phase failures are retried: the endpoint provably never
        # saw those requests, so a retry cannot start a second chain.
        sender = retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(_UNDELIVERED_ERRORS),
            reraise=True,
        )(self._post)

        try:
            response = sender(run_id)
        except httpx.HTTPError as e:
            # Left to stale-run recovery
            logger.error(f"Failed to trigger process-next for run {run_id}: {e}")
            return

        if not response.is_success:
            logger.error(
                f"process-next for run {run_id} rejected: "
                f"{response.status_code} {response.text[:200]}"
            )
