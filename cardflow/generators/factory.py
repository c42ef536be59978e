"""Generation backend selection."""

import logging

from cardflow.config import settings
from cardflow.generators.base import BaseGenerator
from cardflow.generators.llm import LLMGenerator
from cardflow.generators.stand_in import StandInGenerator

logger = logging.getLogger(__name__)


def get_generator() -> BaseGenerator:
    """LLM generator when a provider key is configured, stand-in otherwise."""
    if settings.OPENROUTER_API_KEY:
        return LLMGenerator()
    logger.info("No OPENROUTER_API_KEY configured, using stand-in generator")
    return StandInGenerator()
