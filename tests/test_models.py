"""Tests for request/result models and error helpers."""

import pytest
from pydantic import ValidationError

from story_gateway.errors import classify_provider_failure, localized_message
from story_gateway.models import (
    AdventureContext,
    CharacterProfile,
    GenerationRequest,
    GenerationResult,
    ProviderConfig,
)


# ---------------------------------------------------------------------------
# GenerationResult
# ---------------------------------------------------------------------------

class TestGenerationResult:
    def test_success_has_data_and_no_kind(self) -> None:
        result = GenerationResult.success({"narrative": "Hi"})
        assert result.ok
        assert result.kind is None
        assert result.data == {"narrative": "Hi"}

    def test_failure_has_kind_and_no_data(self) -> None:
        result = GenerationResult.failure("empty_response", "nothing")
        assert not result.ok
        assert result.data is None
        assert result.salvage is None

    def test_both_set_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GenerationResult(data={}, kind="network_error")

    def test_neither_set_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GenerationResult()

    def test_empty_salvage_normalized_to_none(self) -> None:
        result = GenerationResult.failure("malformed_response", "bad", salvage="")
        assert result.salvage is None

    @pytest.mark.parametrize("kind", ["network_error", "quota_exceeded", "model_overloaded"])
    def test_retryable_kinds(self, kind: str) -> None:
        assert GenerationResult.failure(kind, "x").retryable

    @pytest.mark.parametrize("kind", ["malformed_response", "validation_failed", "missing_config"])
    def test_non_retryable_kinds(self, kind: str) -> None:
        assert not GenerationResult.failure(kind, "x").retryable


# ---------------------------------------------------------------------------
# AdventureContext / ProviderConfig
# ---------------------------------------------------------------------------

class TestAdventureContext:
    def test_accepts_camel_case(self) -> None:
        ctx = AdventureContext.model_validate({
            "activeConditions": "Raining",
            "userAction": "I wait",
            "player": {"name": "Ana"},
        })
        assert ctx.active_conditions == "Raining"
        assert ctx.user_action == "I wait"

    def test_is_frozen(self) -> None:
        ctx = AdventureContext(world="x")
        with pytest.raises(ValidationError):
            ctx.world = "y"

    def test_character_names_dedup_case_insensitive(self) -> None:
        ctx = AdventureContext(
            characters=[CharacterProfile(name="Lyra"), CharacterProfile(name="Bran")],
            known_characters=["lyra", "Mira"],
        )
        assert ctx.character_names() == ["Lyra", "Bran", "Mira"]


class TestProviderConfig:
    def test_defaults(self) -> None:
        config = ProviderConfig()
        assert config.llm.source is None
        assert config.image.source is None

    def test_nested_camel_case(self) -> None:
        request = GenerationRequest.model_validate({
            "task": "continue-story",
            "config": {
                "llm": {
                    "source": "custom-local",
                    "customLocal": {"apiUrl": "http://h:1234"},
                },
            },
        })
        assert request.config.llm.custom_local.api_url == "http://h:1234"

    def test_unknown_task_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GenerationRequest(task="write-poem")


# ---------------------------------------------------------------------------
# Error helpers
# ---------------------------------------------------------------------------

class TestClassifyProviderFailure:
    def test_429_is_quota(self) -> None:
        assert classify_provider_failure(429, "") == "quota_exceeded"

    def test_quota_text(self) -> None:
        assert classify_provider_failure(400, "Resource has been exhausted (e.g. check quota).") == "quota_exceeded"

    def test_503_is_overloaded(self) -> None:
        assert classify_provider_failure(503, "") == "model_overloaded"

    def test_overloaded_text(self) -> None:
        assert classify_provider_failure(None, "The model is overloaded") == "model_overloaded"

    def test_other_failures_unclassified(self) -> None:
        assert classify_provider_failure(500, "boom") is None


class TestLocalizedMessage:
    def test_french(self) -> None:
        assert localized_message("quota_exceeded", "fr") == (
            "Le quota de l'API a été dépassé. Veuillez réessayer plus tard."
        )

    def test_region_tag_uses_prefix(self) -> None:
        assert localized_message("model_overloaded", "fr-FR").startswith("Le modèle")

    def test_unknown_language_falls_back_to_english(self) -> None:
        assert localized_message("quota_exceeded", "de") == (
            "The API quota has been exceeded. Please try again later."
        )

    def test_other_kinds_have_no_message(self) -> None:
        assert localized_message("network_error", "en") is None
