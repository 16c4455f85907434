"""Pydantic request/response models for API endpoints."""

from typing import Literal

from pydantic import BaseModel

from story_engine.models import DulfsFieldId, PrereqCategory, TextFieldId


class IntentBody(BaseModel):
    text: str


class GoalBody(BaseModel):
    text: str


class ConfirmBody(BaseModel):
    mode: Literal["chaining", "building"] = "chaining"


class BeatEditBody(BaseModel):
    text: str


class ConstraintBody(BaseModel):
    description: str


class ConstraintActionBody(BaseModel):
    action: Literal["resolve", "reopen", "ground", "remove"]


class StructuralGoalBody(BaseModel):
    goal: str
    why: str | None = None


class PrerequisiteBody(BaseModel):
    element: str | None = None
    load_bearing: str | None = None
    category: PrereqCategory | None = None


class ElementBody(BaseModel):
    name: str | None = None
    content: str | None = None


class FieldBody(BaseModel):
    content: str


class GenerateFieldBody(BaseModel):
    field_id: TextFieldId


class GenerateListBody(BaseModel):
    field_id: DulfsFieldId


class BrainstormBody(BaseModel):
    message: str


class CheckConnectionBody(BaseModel):
    provider_url: str
    api_key: str = ""
