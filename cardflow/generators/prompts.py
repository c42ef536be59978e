"""Prompt builders for each run kind."""

import json
from typing import Any, Dict

from cardflow.schemas.run import RunConfig

MAX_DOCUMENT_CHARS = 60000

GENERATION_MODE_CONFIG = {
    "compact": {
        "story_count": (5, 8),
        "subtask_count": (2, 4),
        "focus": "Core user journeys only, happy paths",
    },
    "standard": {
        "story_count": (8, 12),
        "subtask_count": (3, 6),
        "focus": "Complete feature coverage with primary edge cases",
    },
    "detailed": {
        "story_count": (12, 15),
        "subtask_count": (5, 8),
        "focus": "Exhaustive coverage including edge cases, error states, and alternative flows",
    },
}

PERSONA_SETS = {
    "lightweight": ["End User", "Administrator", "System"],
    "core": ["End User", "Administrator", "System", "Product Owner", "Developer"],
    "full": [
        "End User",
        "Administrator",
        "System",
        "Product Owner",
        "Developer",
        "QA Engineer",
        "Security Analyst",
        "Support Agent",
        "Operations",
    ],
}


def cards_prompt(payload: Dict[str, Any], config: RunConfig) -> str:
    text = (payload.get("text") or "")[:MAX_DOCUMENT_CHARS]
    context = payload.get("project_context")
    context_block = f"\nProject context:\n{context}\n" if context else ""

    return f"""Analyze the following document and extract distinct use-case cards.
{context_block}
Document: {payload.get("title", "Untitled")}
---
{text}
---

Requirements:
1. Extract at most {config.max_cards_per_upload} cards, one per distinct use case or opportunity
2. Each card must specify:
   - title (short, descriptive)
   - problem (the problem or opportunity)
   - target_users
   - current_state
   - desired_outcomes
   - constraints
   - systems (systems or integrations involved)
   - priority ("high", "medium" or "low")
   - impact ("high", "medium" or "low")
   - raw_text (the passage the card is based on)
3. Do NOT invent facts that are not supported by the document
4. Return valid JSON: {{"cards": [...]}}
"""


def stories_prompt(payload: Dict[str, Any], config: RunConfig) -> str:
    mode = GENERATION_MODE_CONFIG[config.mode.value]
    low, high = mode["story_count"]
    personas = ", ".join(PERSONA_SETS[config.persona_set.value])
    epic = json.dumps(payload, indent=2, default=str)

    return f"""Write user stories for the following epic.

Epic:
{epic}

Requirements:
1. Write between {low} and {high} stories
2. Focus: {mode["focus"]}
3. Use only these personas: {personas}
4. Each story must specify:
   - code (e.g. "{payload.get("code", "E1")}-S1")
   - title
   - user_story ("As a <persona>, I want <goal> so that <benefit>")
   - persona
   - acceptance_criteria (list of testable statements)
   - technical_notes
   - priority ("must", "should" or "could")
   - effort ("XS", "S", "M", "L" or "XL")
5. Return valid JSON: {{"stories": [...]}}
"""


def subtasks_prompt(payload: Dict[str, Any], config: RunConfig) -> str:
    mode = GENERATION_MODE_CONFIG[config.mode.value]
    low, high = mode["subtask_count"]
    story = json.dumps(payload, indent=2, default=str)

    return f"""Break the following user story into implementation subtasks.

Story:
{story}

Requirements:
1. Write between {low} and {high} subtasks
2. Each subtask must specify:
   - code (e.g. "{payload.get("code", "S1")}-T1")
   - title
   - description
   - effort ("XS", "S", "M", "L" or "XL")
3. Subtasks must be small enough for one developer to finish in a few days
4. Return valid JSON: {{"subtasks": [...]}}
"""
