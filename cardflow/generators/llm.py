"""LLM-backed generator."""

import json
import logging
import re
from typing import Any, Dict

from cardflow.generators.base import BaseGenerator, GenerationError
from cardflow.generators.prompts import cards_prompt, stories_prompt, subtasks_prompt
from cardflow.schemas.artifacts import CardsOutput, GenerationResult, StoriesOutput, SubtasksOutput
from cardflow.schemas.enums import RunKind
from cardflow.schemas.run import RunConfig
from cardflow.services.llm_client import LLMClient

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)

# kind -> (prompt builder, output schema, output key)
KIND_OUTPUTS = {
    RunKind.ANALYZE_DOCUMENTS.value: (cards_prompt, CardsOutput, "cards"),
    RunKind.GENERATE_STORIES.value: (stories_prompt, StoriesOutput, "stories"),
    RunKind.GENERATE_SUBTASKS.value: (subtasks_prompt, SubtasksOutput, "subtasks"),
}


def parse_json_response(content: str) -> Dict[str, Any]:
    """Parse a JSON object from a model response, tolerating code fences."""
    cleaned = _FENCE_RE.sub("", content.strip()).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise GenerationError(f"Malformed JSON from model: {e}") from e
    if not isinstance(data, dict):
        raise GenerationError("Model response is not a JSON object")
    return data


class LLMGenerator(BaseGenerator):
    """Generates artifacts through the OpenRouter chat completions API."""

    name = "llm"

    def __init__(self, llm_client: LLMClient = None, **kwargs):
        super().__init__(**kwargs)
        self.llm = llm_client or LLMClient()

    def _run(self, kind: str, payload: Dict[str, Any], config: RunConfig) -> GenerationResult:
        entry = KIND_OUTPUTS.get(kind)
        if not entry:
            raise ValueError(f"Unsupported run kind: {kind}")
        build_prompt, output_schema, key = entry

        messages = [{"role": "user", "content": build_prompt(payload, config)}]
        response = self.llm.chat_completion(
            messages=messages,
            temperature=0.3,
            max_tokens=6000,
            json_mode=True,
        )

        output = output_schema(**parse_json_response(response.content))
        artifacts = [a.model_dump() for a in getattr(output, key)]

        if kind == RunKind.ANALYZE_DOCUMENTS.value:
            artifacts = artifacts[: config.max_cards_per_upload]

        return GenerationResult(artifacts=artifacts, tokens_used=response.tokens_used)
