"""Output schemas, one per task kind.

Each schema is a pydantic model used twice: its JSON schema steers the
prompt (and the native-local grammar), and the model itself validates the
backend's answer. Field names are camelCase on the wire and snake_case in
Python. Scalars are strict: "5" is not an integer and 1 is not a string.
Unknown fields are ignored; optional fields left out or sent as null take
their defaults.
"""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from story_gateway.models import TaskKind

AFFINITY_CHANGE_LIMIT = 10
DEFAULT_SUGGESTIONS_RESPONSE = "Here are some suggestions:"


class _Output(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


# ---------------------------------------------------------------------------
# continue-story
# ---------------------------------------------------------------------------

class SceneDescription(_Output):
    action: StrictStr
    camera_angle: StrictStr = ""


class CharacterUpdate(_Output):
    character_name: StrictStr
    history_entry: StrictStr


class AffinityUpdate(_Output):
    character_name: StrictStr
    change: StrictInt
    reason: StrictStr = ""

    @field_validator("change", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, int):
            return max(-AFFINITY_CHANGE_LIMIT, min(AFFINITY_CHANGE_LIMIT, value))
        return value


class RelationUpdate(_Output):
    character_name: StrictStr
    target_name: StrictStr
    new_relation: StrictStr
    reason: StrictStr = ""


class StoryContinuation(_Output):
    narrative: StrictStr
    speaking_character_names: list[StrictStr] = Field(default_factory=list)
    scene_description_for_image: SceneDescription | None = None
    character_updates: list[CharacterUpdate] = Field(default_factory=list)
    affinity_updates: list[AffinityUpdate] = Field(default_factory=list)
    relation_updates: list[RelationUpdate] = Field(default_factory=list)
    new_event: StrictStr = ""

    @field_validator("scene_description_for_image", mode="before")
    @classmethod
    def _bare_scene_string(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"action": value} if value.strip() else None
        return value


# ---------------------------------------------------------------------------
# describe-appearance
# ---------------------------------------------------------------------------

class AppearanceDescription(_Output):
    description: StrictStr


# ---------------------------------------------------------------------------
# summarize-event
# ---------------------------------------------------------------------------

class EventSummary(_Output):
    memory: StrictStr
    involved_character_names: list[StrictStr] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# materialize-character
# ---------------------------------------------------------------------------

class InitialRelation(_Output):
    target_name: StrictStr
    description: StrictStr


class MaterializedCharacter(_Output):
    name: StrictStr
    details: StrictStr = ""
    biography_notes: StrictStr = ""
    initial_history_entry: StrictStr = ""
    initial_relations: list[InitialRelation] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _new_name(cls, value: str, info: ValidationInfo) -> str:
        if not value.strip():
            raise ValueError("no new character was identified")
        known = (info.context or {}).get("known_characters", ())
        if value.strip().lower() in {k.lower() for k in known}:
            raise ValueError(f'character "{value}" already exists')
        return value


# ---------------------------------------------------------------------------
# creative-assist
# ---------------------------------------------------------------------------

SuggestionField = Literal[
    "world",
    "initialSituation",
    "characterName",
    "characterDetails",
    "characterPlaceholder",
    "comicModeActive",
    "timeManagement.enabled",
]


class Suggestion(_Output):
    field: SuggestionField
    value: StrictStr | StrictBool | dict[str, StrictStr]


class CreativeAssistance(_Output):
    response: StrictStr
    suggestions: list[Suggestion] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _wrap_bare_suggestions(cls, data: Any) -> Any:
        if isinstance(data, list):
            data = {"suggestions": data}
        if isinstance(data, dict) and not data.get("response") and data.get("suggestions"):
            data = {**data, "response": DEFAULT_SUGGESTIONS_RESPONSE}
        return data


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

SCHEMAS: dict[str, type[_Output]] = {
    "continue-story": StoryContinuation,
    "describe-appearance": AppearanceDescription,
    "summarize-event": EventSummary,
    "materialize-character": MaterializedCharacter,
    "creative-assist": CreativeAssistance,
}

# Player-visible text field per task; raw output is salvaged into it.
SALVAGE_FIELDS: dict[str, str | None] = {
    "continue-story": "narrative",
    "describe-appearance": "description",
    "summarize-event": "memory",
    "materialize-character": None,
    "creative-assist": "response",
}


def schema_for(task: TaskKind) -> type[_Output]:
    return SCHEMAS[task]


@lru_cache(maxsize=None)
def json_schema(task: TaskKind) -> dict[str, Any]:
    """Full JSON schema (camelCase) for grammar-constrained backends."""
    return SCHEMAS[task].model_json_schema(by_alias=True)


@lru_cache(maxsize=None)
def describe_schema(task: TaskKind) -> str:
    """Compact example-shaped description of the schema for prompts.

    {"narrative": "string", "affinityUpdates": [{"change": "integer", ...}]}
    Optional scalars are marked "(optional)".
    """
    schema = json_schema(task)
    shape = _shape(schema, schema.get("$defs", {}))
    return json.dumps(shape, indent=2, ensure_ascii=False)


def _shape(node: dict[str, Any], defs: dict[str, Any]) -> Any:
    if "$ref" in node:
        return _shape(defs[node["$ref"].rsplit("/", 1)[-1]], defs)
    if "anyOf" in node:
        options = [o for o in node["anyOf"] if o.get("type") != "null"]
        if len(options) == 1:
            return _shape(options[0], defs)
        return " | ".join(_type_name(o, defs) for o in options)
    if "enum" in node:
        return " | ".join(str(v) for v in node["enum"])
    if "const" in node:
        return str(node["const"])
    kind = node.get("type")
    if kind == "array":
        return [_shape(node.get("items", {}), defs)]
    if kind == "object" and "properties" in node:
        required = set(node.get("required", ()))
        out: dict[str, Any] = {}
        for name, prop in node["properties"].items():
            shape = _shape(prop, defs)
            if name not in required and isinstance(shape, str):
                shape = f"{shape} (optional)"
            out[name] = shape
        return out
    return _type_name(node, defs)


def _type_name(node: dict[str, Any], defs: dict[str, Any]) -> str:
    if "$ref" in node:
        return "object"
    return node.get("type", "any")
