"""Prompt builder: AdventureContext + task kind -> backend-agnostic Prompt.

Instruction headers are Handlebars templates rendered with pybars. The
context is serialised into labelled sections in a fixed order:

    player -> world -> situation -> time -> conditions -> characters -> action

Each task renders a subset of that order. A section whose content is empty,
None or an empty list is skipped entirely. The schema description is always
appended last. Building is a pure function of its inputs.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pybars

from story_gateway.models import AdventureContext, ChatTurn, TaskKind
from story_gateway.schemas import describe_schema

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when an instruction template fails to compile or render."""


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Instruction templates ────────────────────────────────

_OUTPUT_RULES = (
    "The REQUIRED output language is: {{{language}}}.\n"
    "You MUST respond EXCLUSIVELY with a valid JSON object that conforms to the "
    "EXPECTED JSON OUTPUT below. Do NOT write any text before or after the JSON object."
)

STORY_TEMPLATE = (
    "You are an interactive fiction engine for a relationship-focused game. "
    "Your task is to write the continuation of the story.\n"
    + _OUTPUT_RULES + "\n"
    "NEVER narrate the actions or thoughts of the player character"
    "{{#if player}} ({{{player}}}){{/if}}. Do NOT repeat or summarize the player's action: "
    "start directly with its consequences and the reactions of the other characters "
    "and the world.\n"
    "When a character acts, start the sentence with their name. Use double quotes "
    "(\"...\") for speech and asterisks (*...*) for thoughts; unadorned text is narration.\n"
    "For `sceneDescriptionForImage`, give a MINIMAL description in ENGLISH of who is "
    "doing what, where, without describing anyone's appearance, and suggest a creative "
    "`cameraAngle`.\n"
    "For `affinityUpdates`, use small changes (usually -2 to +2, never beyond -10 or +10) "
    "and justify each with a `reason`.\n"
    "For `newEvent`, describe the new event briefly if the narrative changes it; "
    "otherwise leave it empty.\n"
    "If a field has no relevant content, use an empty array [] or an empty string \"\". "
    "Do NOT use null."
)

APPEARANCE_TEMPLATES = {
    "person": (
        "You are an expert character artist. Analyze the provided image and write a "
        "detailed, objective description of the person's permanent physical traits ONLY: "
        "face, eyes, hair and build.\n"
        "Do NOT describe clothing, accessories, background or lighting. Do NOT invent "
        "personality, backstory or names.\n"
        + _OUTPUT_RULES
    ),
    "clothing": (
        "You are an expert fashion artist. Analyze the provided image and write a "
        "detailed, objective description of the clothing ONLY: type, cut, color, "
        "material and patterns.\n"
        "Do NOT describe the person wearing it, the background or any accessories.\n"
        + _OUTPUT_RULES
    ),
}

SUMMARY_TEMPLATE = (
    "You are a meticulous archivist for a text-based adventure game. Read the current "
    "situation and write ONE concise summary (1-2 sentences, third person) of the most "
    "significant event, decision or quote. It will be added to the memory of the "
    "characters involved.\n"
    "{{#if known}}List in `involvedCharacterNames` the characters primarily involved, "
    "chosen from: {{{known}}}.\n{{/if}}"
    + _OUTPUT_RULES
)

MATERIALIZE_TEMPLATE = (
    "You are a character creation assistant for a text-based adventure game. Identify a "
    "NEW character mentioned in the current situation and write a full character sheet.\n"
    "Only living beings are characters: never create one from an abstract concept, an "
    "object or a natural element.\n"
    "{{#if known}}Do NOT create any of these existing characters: {{{known}}}.\n{{/if}}"
    "If no new character is mentioned, respond with an empty JSON object {}.\n"
    "`details` and `biographyNotes` MUST be plain strings.\n"
    + _OUTPUT_RULES
)

CREATIVE_TEMPLATE = (
    "You are a creative assistant for the author of a text-based adventure game. Help "
    "them brainstorm their world, story and characters. Be concise, creative and "
    "inspiring.\n"
    "When you give a concrete idea, also add it to `suggestions` for the matching form "
    "field. For `world` and `initialSituation` the value is an object keyed by language "
    "code; for character fields it is a string; for `comicModeActive` and "
    "`timeManagement.enabled` it is a boolean.\n"
    + _OUTPUT_RULES
)


# ── Prompt artifact ──────────────────────────────────────


@dataclass(frozen=True)
class Section:
    title: str
    body: str

    def render(self) -> str:
        return f"## {self.title}\n{self.body}"


@dataclass(frozen=True)
class Prompt:
    """Backend-agnostic prompt; adapters pick the rendering they need."""

    task: TaskKind
    instruction: str
    sections: tuple[Section, ...]
    schema: str
    images: tuple[str, ...] = ()
    history: tuple[ChatTurn, ...] = ()

    @property
    def user_text(self) -> str:
        parts = [s.render() for s in self.sections]
        parts.append(f"## EXPECTED JSON OUTPUT\n```json\n{self.schema}\n```")
        return "\n\n".join(parts)

    def as_messages(self) -> list[dict[str, Any]]:
        """OpenAI-style chat messages; images become image_url content parts."""
        messages: list[dict[str, Any]] = [{"role": "system", "content": self.instruction}]
        messages.extend(
            {"role": turn.role, "content": turn.content}
            for turn in self.history
            if turn.content
        )
        content: Any = self.user_text
        if self.images:
            content = [
                {"type": "image_url", "image_url": {"url": url}} for url in self.images
            ]
            content.append({"type": "text", "text": self.user_text})
        messages.append({"role": "user", "content": content})
        return messages

    def as_text(self, image_tag: str = "") -> str:
        """Raw-completion rendering: USER:/ASSISTANT: turns ending on ASSISTANT:.

        `image_tag` (e.g. "[img-1]") is placed at the start of the last user
        turn for servers that splice image embeddings into the prompt.
        """
        lines = [
            f"{'USER' if turn.role == 'user' else 'ASSISTANT'}: {turn.content}"
            for turn in self.history
            if turn.content
        ]
        tag = f"{image_tag}\n" if image_tag else ""
        lines.append(f"USER: {tag}{self.instruction}\n\n{self.user_text}")
        lines.append("ASSISTANT:")
        return "\n".join(lines)


# ── Section rendering ────────────────────────────────────

SECTION_ORDER = ("player", "world", "situation", "time", "conditions", "characters", "action")

TASK_SECTIONS: dict[str, tuple[str, ...]] = {
    "continue-story": SECTION_ORDER,
    "describe-appearance": (),
    "summarize-event": ("situation", "characters"),
    "materialize-character": ("situation", "characters"),
    "creative-assist": ("action",),
}

def _is_empty(content: Any) -> bool:
    if content is None:
        return True
    if isinstance(content, str):
        return not content.strip()
    return len(content) == 0


def _section(title: str, content: str | list[str] | None) -> Section | None:
    """Build a section, or None when there is nothing to say."""
    if _is_empty(content):
        return None
    if isinstance(content, str):
        return Section(title, content.strip())
    lines = [item for item in content if not _is_empty(item)]
    if not lines:
        return None
    return Section(title, "\n".join(f"- {line}" for line in lines))


def _player_lines(ctx: AdventureContext) -> list[str]:
    p = ctx.player
    lines = []
    if p.name:
        lines.append(f"Name: {p.name}")
    if p.details:
        lines.append(f"Physical description: {p.details}")
    if p.description:
        lines.append(f"Background/personality: {p.description}")
    if p.orientation:
        lines.append(f"Romantic orientation: {p.orientation}")
    if p.stats:
        lines.append("Stats: " + ", ".join(f"{k} {v}" for k, v in p.stats.items()))
    return lines


def _time_lines(ctx: AdventureContext) -> list[str]:
    t = ctx.time
    if t is None or not t.enabled:
        return []
    day = f"Day {t.day}" + (f" ({t.day_name})" if t.day_name else "")
    return [
        day,
        f"Current time: {t.current_time}" if t.current_time else "",
        f"Current event: {t.current_event}" if t.current_event else "",
        f"Time to elapse this turn: {t.time_elapsed_per_turn}"
        if t.time_elapsed_per_turn else "",
    ]


def _character_entries(ctx: AdventureContext) -> list[str]:
    entries = []
    for char in ctx.characters:
        head = f"{char.name}: {char.details}" if char.details else char.name
        lines = [f"{head} (Affinity: {char.affinity}/100)"]
        if char.relations:
            lines.append(
                "  Relations: "
                + "; ".join(f"{target}: {rel}" for target, rel in char.relations.items())
            )
        if char.history:
            lines.append("  Recent history: " + " | ".join(char.history[-3:]))
        stats = _combat_stats(char)
        if stats:
            lines.append(f"  Stats: {stats}")
        entries.append("\n".join(lines))
    return entries


def _combat_stats(char) -> str:
    parts = []
    if char.character_class:
        parts.append(f"Class {char.character_class}")
    if char.level is not None:
        parts.append(f"Level {char.level}")
    if char.hit_points is not None:
        hp = f"HP {char.hit_points}"
        if char.max_hit_points is not None:
            hp += f"/{char.max_hit_points}"
        parts.append(hp)
    if char.armor_class is not None:
        parts.append(f"AC {char.armor_class}")
    return ", ".join(parts)


def _action_section(ctx: AdventureContext, task: TaskKind) -> Section | None:
    if task == "creative-assist":
        return _section("USER REQUEST", ctx.user_action)
    title = f"PLAYER ACTION ({ctx.player.name})" if ctx.player.name else "PLAYER ACTION"
    section = _section(title, ctx.user_action)
    if section and ctx.portrait_url:
        section = Section(
            section.title,
            section.body + "\nAn image is attached to this action; take it into account.",
        )
    return section


def build_sections(ctx: AdventureContext, task: TaskKind) -> tuple[Section, ...]:
    """Render the task's sections in the fixed order, skipping empty ones."""
    wanted = TASK_SECTIONS[task]
    builders: dict[str, Callable[[], Section | None]] = {
        "player": lambda: _section("PLAYER CHARACTER", _player_lines(ctx)),
        "world": lambda: _section("WORLD CONTEXT", ctx.world),
        "situation": lambda: _section("CURRENT SITUATION / RECENT EVENTS", ctx.situation),
        "time": lambda: _section("TIME & EVENT CONTEXT", _time_lines(ctx)),
        "conditions": lambda: _section("ACTIVE CONDITIONS", ctx.active_conditions),
        "characters": lambda: _section("CHARACTERS PRESENT", _character_entries(ctx)),
        "action": lambda: _action_section(ctx, task),
    }
    sections = []
    for key in SECTION_ORDER:
        if key not in wanted:
            continue
        section = builders[key]()
        if section is not None:
            sections.append(section)
    return tuple(sections)


def build_instruction(ctx: AdventureContext, task: TaskKind) -> str:
    variables = {
        "language": ctx.language,
        "player": ctx.player.name,
        "known": ", ".join(ctx.character_names()),
    }
    if task == "continue-story":
        template = STORY_TEMPLATE
    elif task == "describe-appearance":
        template = APPEARANCE_TEMPLATES[ctx.subject_type]
    elif task == "summarize-event":
        template = SUMMARY_TEMPLATE
    elif task == "materialize-character":
        template = MATERIALIZE_TEMPLATE
    else:
        template = CREATIVE_TEMPLATE
    return render_prompt(template, variables)


def build_prompt(ctx: AdventureContext, task: TaskKind) -> Prompt:
    """Build the full prompt for one request."""
    images: tuple[str, ...] = ()
    if ctx.portrait_url and task in ("continue-story", "describe-appearance"):
        images = (ctx.portrait_url,)
    history = tuple(ctx.chat_history) if task == "creative-assist" else ()
    return Prompt(
        task=task,
        instruction=build_instruction(ctx, task),
        sections=build_sections(ctx, task),
        schema=describe_schema(task),
        images=images,
        history=history,
    )
