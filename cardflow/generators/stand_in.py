"""Deterministic generator used when no provider key is configured."""

import hashlib
import logging
from typing import Any, Dict

from cardflow.generators.base import BaseGenerator
from cardflow.generators.prompts import GENERATION_MODE_CONFIG, PERSONA_SETS
from cardflow.schemas.artifacts import GenerationResult
from cardflow.schemas.enums import RunKind
from cardflow.schemas.run import RunConfig

logger = logging.getLogger(__name__)

FAIL_MARKER = "[fail]"

THEMES = [
    "User Experience",
    "Data Management",
    "Integration",
    "Security & Compliance",
    "Performance",
    "Automation",
]
EFFORTS = ["S", "M", "L"]


def _seed(*parts: Any) -> int:
    digest = hashlib.sha256("|".join(str(p) for p in parts).encode()).hexdigest()
    return int(digest[:8], 16)


class StandInGenerator(BaseGenerator):
    """Produces plausible, repeatable artifacts without calling a provider.

    Subjects whose title contains ``[fail]`` raise, to exercise failure paths.
    """

    name = "stand-in"

    def __init__(self, **kwargs):
        kwargs.setdefault("max_retries", 1)
        super().__init__(**kwargs)

    def _run(self, kind: str, payload: Dict[str, Any], config: RunConfig) -> GenerationResult:
        title = payload.get("title") or ""
        if FAIL_MARKER in title.lower():
            raise RuntimeError(f"Simulated generation failure for '{title}'")

        if kind == RunKind.ANALYZE_DOCUMENTS.value:
            artifacts = self._cards(payload, config)
        elif kind == RunKind.GENERATE_STORIES.value:
            artifacts = self._stories(payload, config)
        elif kind == RunKind.GENERATE_SUBTASKS.value:
            artifacts = self._subtasks(payload, config)
        else:
            raise ValueError(f"Unsupported run kind: {kind}")

        return GenerationResult(artifacts=artifacts, tokens_used=0)

    def _cards(self, payload, config):
        words = len((payload.get("text") or "").split())
        count = min(config.max_cards_per_upload, max(1, min(words // 150 + 1, 5)))
        seed = _seed(payload.get("title"), words)
        cards = []
        for i in range(count):
            theme = THEMES[(seed + i) % len(THEMES)]
            cards.append({
                "title": f"{theme} improvement {i + 1}",
                "problem": f"Users report friction around {theme.lower()} in {payload.get('title')}.",
                "target_users": "End users",
                "desired_outcomes": f"Measurable gains in {theme.lower()}.",
                "priority": ["high", "medium", "low"][i % 3],
                "impact": ["high", "medium", "high"][i % 3],
            })
        return cards

    def _stories(self, payload, config):
        low, _ = GENERATION_MODE_CONFIG[config.mode.value]["story_count"]
        personas = PERSONA_SETS[config.persona_set.value]
        code = payload.get("code") or "E"
        stories = []
        for i in range(low):
            persona = personas[i % len(personas)]
            stories.append({
                "code": f"{code}-S{i + 1}",
                "title": f"{payload.get('title')} capability {i + 1}",
                "user_story": (
                    f"As a {persona}, I want {payload.get('title', '').lower()} capability {i + 1} "
                    f"so that the epic goal is met."
                ),
                "persona": persona,
                "acceptance_criteria": [
                    "Behaviour is covered by automated tests",
                    "Errors are reported to the user",
                ],
                "priority": "must" if i < 3 else "should",
                "effort": EFFORTS[i % len(EFFORTS)],
            })
        return stories

    def _subtasks(self, payload, config):
        low, _ = GENERATION_MODE_CONFIG[config.mode.value]["subtask_count"]
        code = payload.get("code") or "S"
        steps = ["Design", "Implement", "Test", "Document", "Review", "Deploy", "Monitor", "Refine"]
        return [
            {
                "code": f"{code}-T{i + 1}",
                "title": f"{steps[i % len(steps)]} {payload.get('title')}",
                "description": f"{steps[i % len(steps)]} work for story {code}.",
                "effort": EFFORTS[i % len(EFFORTS)],
            }
            for i in range(low)
        ]
