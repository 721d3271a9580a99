"""Response validator: raw model text -> GenerationResult.

Parsing is lenient (code fences, prose around the payload, trailing
commas), validation is strict. A broken answer keeps its player-visible
text in `salvage` whenever the task has such a field.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from story_gateway.models import AdventureContext, GenerationResult, TaskKind, Violation
from story_gateway.schemas import SALVAGE_FIELDS, schema_for

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)\n?\s*```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def strip_code_fences(text: str) -> str:
    """Return the body of the first ``` fence, or the text unchanged."""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def _outermost(text: str) -> str | None:
    """Slice from the first { or [ to the matching last } or ]."""
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return None
    start = min(starts)
    end = text.rfind("}" if text[start] == "{" else "]")
    if end <= start:
        return None
    return text[start:end + 1]


def parse_json(text: str) -> Any:
    """Parse model output as JSON, repairing the usual malformations.

    Raises ValueError when no repair yields valid JSON.
    """
    candidates = [text.strip()]
    unfenced = strip_code_fences(text)
    if unfenced != candidates[0]:
        candidates.append(unfenced)
    sliced = _outermost(unfenced)
    if sliced is not None and sliced not in candidates:
        candidates.append(sliced)

    for candidate in list(candidates):
        repaired = _TRAILING_COMMA_RE.sub(r"\1", candidate)
        if repaired != candidate:
            candidates.append(repaired)

    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise ValueError("response is not valid JSON")


def _salvage(task: TaskKind, data: Any) -> str | None:
    field = SALVAGE_FIELDS[task]
    if field is None or not isinstance(data, dict):
        return None
    value = data.get(field)
    if isinstance(value, str) and value.strip():
        return value
    return None


def _violations(error: ValidationError) -> list[Violation]:
    result = []
    for item in error.errors():
        path = ".".join(str(part) for part in item["loc"]) or "$"
        result.append(Violation(path=path, reason=item["msg"]))
    return result


def validate_response(
    raw: str,
    task: TaskKind,
    context: AdventureContext | None = None,
) -> GenerationResult:
    """Turn raw backend text into an ok or failed GenerationResult."""
    salvage_field = SALVAGE_FIELDS[task]
    try:
        data = parse_json(raw)
    except ValueError:
        logger.warning("Malformed %s response (%d chars)", task, len(raw))
        return GenerationResult.failure(
            "malformed_response",
            "The model did not return valid JSON.",
            salvage=raw.strip() if salvage_field else None,
        )

    # Double-encoded payload: unwrap exactly once.
    text = raw
    if isinstance(data, str):
        text = data
        try:
            data = parse_json(text)
        except ValueError:
            logger.warning("Double-encoded %s response is not valid JSON", task)
            return GenerationResult.failure(
                "malformed_response",
                "The model did not return valid JSON.",
                salvage=text.strip() if salvage_field else None,
            )

    if not isinstance(data, dict) and not (task == "creative-assist" and isinstance(data, list)):
        logger.warning("%s response is a JSON %s, not an object", task, type(data).__name__)
        if isinstance(data, str):
            text = data
        return GenerationResult.failure(
            "validation_failed",
            f"$ - expected a JSON object, got {type(data).__name__}",
            salvage=(text.strip() or None) if salvage_field else None,
            violations=[Violation(path="$", reason="expected a JSON object")],
        )

    known = context.character_names() if context is not None else []
    try:
        model = schema_for(task).model_validate(data, context={"known_characters": known})
    except ValidationError as e:
        violations = _violations(e)
        logger.warning("Invalid %s response: %d violation(s)", task, len(violations))
        message = "; ".join(f"{v.path} - {v.reason}" for v in violations)
        return GenerationResult.failure(
            "validation_failed",
            message,
            salvage=_salvage(task, data),
            violations=violations,
        )
    return GenerationResult.success(model.model_dump(by_alias=True))
