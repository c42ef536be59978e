"""Generation input/output schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# Document analysis
class CardSchema(BaseModel):
    """Schema for a use-case card."""

    title: str
    problem: Optional[str] = None
    target_users: Optional[str] = None
    current_state: Optional[str] = None
    desired_outcomes: Optional[str] = None
    constraints: Optional[str] = None
    systems: Optional[str] = None
    priority: Optional[str] = None
    impact: Optional[str] = None
    raw_text: Optional[str] = None


class CardsOutput(BaseModel):
    """Output from document analysis."""

    cards: List[CardSchema]


# Story generation
class StorySchema(BaseModel):
    """Schema for a user story."""

    code: str
    title: str
    user_story: str
    persona: Optional[str] = None
    acceptance_criteria: List[str] = Field(default_factory=list)
    technical_notes: Optional[str] = None
    priority: Optional[str] = None
    effort: Optional[str] = None


class StoriesOutput(BaseModel):
    """Output from story generation."""

    stories: List[StorySchema]


# Subtask generation
class SubtaskSchema(BaseModel):
    """Schema for a subtask."""

    code: str
    title: str
    description: Optional[str] = None
    effort: Optional[str] = None


class SubtasksOutput(BaseModel):
    """Output from subtask generation."""

    subtasks: List[SubtaskSchema]


class GenerationResult(BaseModel):
    """What a generator hands back for one subject."""

    artifacts: List[Dict[str, Any]]
    tokens_used: int = 0
