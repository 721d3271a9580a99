"""Core request/result models.

The caller supplies an AdventureContext and a ProviderConfig; the gateway
reads both and never mutates them. Every generation call returns a
GenerationResult. Pydantic is used for validation and serialisation at
every data boundary.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from story_gateway.errors import RETRYABLE_KINDS, ErrorKind

TaskKind = Literal[
    "continue-story",
    "describe-appearance",
    "summarize-event",
    "materialize-character",
    "creative-assist",
]

SubjectType = Literal["person", "clothing"]


class _Frozen(BaseModel):
    """Immutable, accepts both snake_case and camelCase keys."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# AdventureContext
# ---------------------------------------------------------------------------

class PlayerProfile(_Frozen):
    name: str = ""
    details: str = ""  # physical description
    description: str = ""  # background / personality
    orientation: str = ""
    stats: dict[str, int | str] = Field(default_factory=dict)


class CharacterProfile(_Frozen):
    """An NPC present in the scene."""

    name: str
    details: str = ""
    affinity: int = 50  # 0–100, towards the player
    relations: dict[str, str] = Field(default_factory=dict)  # target name -> relation
    history: list[str] = Field(default_factory=list)
    hit_points: int | None = None
    max_hit_points: int | None = None
    armor_class: int | None = None
    character_class: str | None = None
    level: int | None = None


class TimeState(_Frozen):
    enabled: bool = False
    day: int = 1
    day_name: str = ""
    current_time: str = ""
    current_event: str = ""
    time_elapsed_per_turn: str = ""


class ChatTurn(_Frozen):
    role: Literal["user", "assistant"]
    content: str


class AdventureContext(_Frozen):
    """Everything the prompt builder may render for one request."""

    world: str = ""
    situation: str = ""
    player: PlayerProfile = Field(default_factory=PlayerProfile)
    characters: list[CharacterProfile] = Field(default_factory=list)
    active_conditions: str = ""
    language: str = "en"
    time: TimeState | None = None
    user_action: str = ""  # player action, or the user's request for creative-assist
    known_characters: list[str] = Field(default_factory=list)
    portrait_url: str | None = None
    subject_type: SubjectType = "person"
    chat_history: list[ChatTurn] = Field(default_factory=list)

    def character_names(self) -> list[str]:
        """Names of present and known characters, first occurrence wins."""
        seen: set[str] = set()
        names: list[str] = []
        for name in [c.name for c in self.characters] + list(self.known_characters):
            if name and name.lower() not in seen:
                seen.add(name.lower())
                names.append(name)
        return names


# ---------------------------------------------------------------------------
# ProviderConfig
# ---------------------------------------------------------------------------

class HostedSettings(_Frozen):
    api_key: str = ""
    model: str = ""


class OpenRouterSettings(_Frozen):
    api_key: str = ""
    model: str = ""
    max_tokens: int | None = None


class LocalSettings(_Frozen):
    model: str = ""


class CustomLocalSettings(_Frozen):
    api_url: str = ""
    api_key: str = ""
    model: str = ""


class LlmConfig(_Frozen):
    # "gemini" | "openrouter" | "local" | "custom-local"; anything else is hosted
    source: str | None = None
    gemini: HostedSettings = Field(default_factory=HostedSettings)
    open_router: OpenRouterSettings = Field(default_factory=OpenRouterSettings)
    local: LocalSettings = Field(default_factory=LocalSettings)
    custom_local: CustomLocalSettings = Field(default_factory=CustomLocalSettings)


class ImageConfig(_Frozen):
    # "gemini" | "openrouter" | "huggingface" | "local-sd"
    source: str | None = None


class ProviderConfig(_Frozen):
    llm: LlmConfig = Field(default_factory=LlmConfig)
    image: ImageConfig = Field(default_factory=ImageConfig)


# ---------------------------------------------------------------------------
# Request / result
# ---------------------------------------------------------------------------

class GenerationRequest(_Frozen):
    task: TaskKind
    context: AdventureContext = Field(default_factory=AdventureContext)
    config: ProviderConfig = Field(default_factory=ProviderConfig)


class Violation(_Frozen):
    path: str
    reason: str


class GenerationResult(BaseModel):
    """Either ok (data set) or failed (kind set), never both."""

    data: dict[str, Any] | None = None
    kind: ErrorKind | None = None
    message: str = ""
    salvage: str | None = None
    violations: list[Violation] = Field(default_factory=list)

    @model_validator(mode="after")
    def _data_xor_kind(self) -> GenerationResult:
        if (self.data is None) == (self.kind is None):
            raise ValueError("exactly one of data and kind must be set")
        return self

    @classmethod
    def success(cls, data: dict[str, Any]) -> GenerationResult:
        return cls(data=data)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        salvage: str | None = None,
        violations: list[Violation] | None = None,
    ) -> GenerationResult:
        return cls(
            kind=kind,
            message=message,
            salvage=salvage or None,
            violations=violations or [],
        )

    @property
    def ok(self) -> bool:
        return self.kind is None

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS
