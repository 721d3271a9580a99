"""Tests for the response validator: parsing, repair, double-encoding,
schema validation and salvage."""

import json

import pytest

from story_gateway.models import AdventureContext, CharacterProfile
from story_gateway.validator import parse_json, strip_code_fences, validate_response


# ---------------------------------------------------------------------------
# parse_json / strip_code_fences
# ---------------------------------------------------------------------------

class TestParseJson:
    def test_plain(self) -> None:
        assert parse_json('{"a": 1}') == {"a": 1}

    def test_code_fence(self) -> None:
        assert parse_json('```json\n{"a": 1}\n```') == {"a": 1}

    def test_surrounding_prose(self) -> None:
        assert parse_json('Sure! Here it is: {"a": [1, 2]} Enjoy.') == {"a": [1, 2]}

    def test_trailing_commas(self) -> None:
        assert parse_json('{"a": [1, 2,], "b": 3,}') == {"a": [1, 2], "b": 3}

    def test_bare_array(self) -> None:
        assert parse_json('[{"x": 1}]') == [{"x": 1}]

    def test_prose_raises(self) -> None:
        with pytest.raises(ValueError):
            parse_json("The door creaks open.")


def test_strip_code_fences_without_fence():
    assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


def test_strip_code_fences_unlabelled():
    assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'


# ---------------------------------------------------------------------------
# validate_response
# ---------------------------------------------------------------------------

class TestMalformed:
    def test_prose_salvaged_as_narrative(self) -> None:
        result = validate_response("The door creaks open.", "continue-story")
        assert result.kind == "malformed_response"
        assert result.salvage == "The door creaks open."
        assert result.data is None

    def test_no_salvage_for_materialize(self) -> None:
        result = validate_response("Nobody new here.", "materialize-character")
        assert result.kind == "malformed_response"
        assert result.salvage is None

    def test_double_encoded_garbage_salvages_inner_text(self) -> None:
        result = validate_response(json.dumps("just words"), "summarize-event")
        assert result.kind == "malformed_response"
        assert result.salvage == "just words"


class TestDoubleEncoding:
    def test_unwrapped_once(self) -> None:
        raw = json.dumps(json.dumps({"narrative": "Hi"}))
        result = validate_response(raw, "continue-story")
        assert result.ok
        assert result.data["narrative"] == "Hi"
        assert result.data["affinityUpdates"] == []

    def test_not_unwrapped_recursively(self) -> None:
        raw = json.dumps(json.dumps(json.dumps({"narrative": "Hi"})))
        result = validate_response(raw, "continue-story")
        assert result.kind == "validation_failed"
        assert result.violations[0].path == "$"
        assert result.salvage == '{"narrative": "Hi"}'


class TestValidation:
    def test_success_returns_camel_case_data(self) -> None:
        raw = json.dumps({
            "narrative": "Lyra smiles.",
            "affinityUpdates": [{"characterName": "Lyra", "change": 3}],
        })
        result = validate_response(raw, "continue-story")
        assert result.ok
        assert result.data["affinityUpdates"][0] == {
            "characterName": "Lyra", "change": 3, "reason": "",
        }

    @pytest.mark.parametrize("task,payload,path", [
        ("continue-story", {"speakingCharacterNames": []}, "narrative"),
        ("describe-appearance", {}, "description"),
        ("summarize-event", {"involvedCharacterNames": ["Lyra"]}, "memory"),
        ("materialize-character", {"details": "tall"}, "name"),
        ("creative-assist", {"suggestions": []}, "response"),
    ])
    def test_missing_required_field_named(self, task, payload, path) -> None:
        result = validate_response(json.dumps(payload), task)
        assert result.kind == "validation_failed"
        assert path in [v.path for v in result.violations]
        assert path in result.message

    def test_nested_path(self) -> None:
        raw = json.dumps({
            "narrative": "Lyra frowns.",
            "affinityUpdates": [{"characterName": "Lyra", "change": "a lot"}],
        })
        result = validate_response(raw, "continue-story")
        assert result.kind == "validation_failed"
        assert result.violations[0].path == "affinityUpdates.0.change"

    def test_validation_salvage_keeps_narrative(self) -> None:
        raw = json.dumps({"narrative": "Lyra frowns.", "characterUpdates": "oops"})
        result = validate_response(raw, "continue-story")
        assert result.kind == "validation_failed"
        assert result.salvage == "Lyra frowns."

    def test_non_object_rejected_with_salvage(self) -> None:
        result = validate_response("42", "summarize-event")
        assert result.kind == "validation_failed"
        assert result.violations[0].path == "$"
        assert result.salvage == "42"

    def test_non_object_without_salvage_field(self) -> None:
        result = validate_response("42", "materialize-character")
        assert result.kind == "validation_failed"
        assert result.salvage is None

    def test_bare_array_for_creative_assist(self) -> None:
        result = validate_response('[{"field": "characterName", "value": "Mira"}]', "creative-assist")
        assert result.ok
        assert result.data["suggestions"][0]["value"] == "Mira"

    def test_materialize_existing_character(self) -> None:
        ctx = AdventureContext(characters=[CharacterProfile(name="Lyra")])
        result = validate_response('{"name": "lyra"}', "materialize-character", ctx)
        assert result.kind == "validation_failed"
        assert result.violations[0].path == "name"
