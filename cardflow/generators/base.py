"""Base generator with retry and validation logic."""

import logging
import time
from typing import Any, Callable, Dict, Optional

from cardflow.config import settings
from cardflow.schemas.artifacts import GenerationResult
from cardflow.schemas.run import RunConfig

logger = logging.getLogger(__name__)


class GenerationError(Exception):
    """The generator could not produce usable output for a subject."""


class BaseGenerator:
    """Base class for generation backends.

    Subclasses implement ``_run``; ``generate`` wraps it with retries and
    output validation.
    """

    name = "base"

    def __init__(
        self,
        max_retries: Optional[int] = None,
        retry_delay_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max_retries or settings.GENERATION_MAX_RETRIES
        self.retry_delay_seconds = retry_delay_seconds
        self.sleep = sleep

    def generate(self, kind: str, payload: Dict[str, Any], config: RunConfig) -> GenerationResult:
        """
        Generate artifacts for one subject, with retries.

        Args:
            kind: Run kind the subject belongs to
            payload: Subject description built by the kind handler
            config: The run's job parameters

        Returns:
            GenerationResult with artifact dicts and token usage

        Raises:
            Exception: If generation fails after max retries
        """
        for attempt in range(self.max_retries):
            try:
                logger.info(f"Generator {self.name} ({kind}) attempt {attempt + 1}/{self.max_retries}")

                result = self._run(kind, payload, config)

                if self._validate(kind, result):
                    return result
                logger.warning(f"Generator {self.name} returned no usable artifacts")

            except Exception as e:
                logger.error(f"Generator {self.name} error: {e}")
                if attempt == self.max_retries - 1:
                    raise

            if attempt < self.max_retries - 1:
                delay = self.retry_delay_seconds * (attempt + 1)
                logger.warning(f"Generator {self.name} waiting {delay}s before retry {attempt + 2}...")
                self.sleep(delay)

        raise GenerationError(f"Generator {self.name} failed after {self.max_retries} attempts")

    def _run(self, kind: str, payload: Dict[str, Any], config: RunConfig) -> GenerationResult:
        raise NotImplementedError

    def _validate(self, kind: str, result: GenerationResult) -> bool:
        """At least one artifact must come back."""
        return len(result.artifacts) > 0
