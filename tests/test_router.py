"""Tests for backend selection and the end-to-end router flow."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from story_gateway.errors import AdapterError, SupervisorError
from story_gateway.models import GenerationRequest, ProviderConfig
from story_gateway.router import Router, select_backend


def _config(llm_source=None, image_source=None, **llm) -> ProviderConfig:
    return ProviderConfig.model_validate({
        "llm": {"source": llm_source, **llm},
        "image": {"source": image_source},
    })


# ---------------------------------------------------------------------------
# select_backend
# ---------------------------------------------------------------------------

class TestSelectBackend:
    @pytest.mark.parametrize("task", ["continue-story", "summarize-event", "materialize-character", "creative-assist"])
    @pytest.mark.parametrize("source,expected", [
        ("openrouter", "openrouter"),
        ("local", "native-local"),
        ("gemini", "hosted"),
        (None, "hosted"),
        ("something-else", "hosted"),
        ("custom-local", "hosted"),
    ])
    def test_text_tasks(self, task, source, expected) -> None:
        assert select_backend(task, _config(source)) == expected

    @pytest.mark.parametrize("image_source,llm_source,expected", [
        ("openrouter", None, "openrouter"),
        ("openrouter", "custom-local", "openrouter"),
        ("local-sd", None, "native-local"),
        ("local-sd", "custom-local", "native-local"),
        ("gemini", None, "hosted"),
        (None, None, "hosted"),
        ("huggingface", "openrouter", "hosted"),
        ("gemini", "custom-local", "custom-local"),
        (None, "custom-local", "custom-local"),
    ])
    def test_vision_task(self, image_source, llm_source, expected) -> None:
        config = _config(llm_source, image_source)
        assert select_backend("describe-appearance", config) == expected


# ---------------------------------------------------------------------------
# Router.generate
# ---------------------------------------------------------------------------

def _stub_adapter(name: str, raw: str = "", error: Exception | None = None) -> MagicMock:
    adapter = MagicMock()
    adapter.name = name
    adapter.check_config = MagicMock()
    adapter.send = AsyncMock(return_value=raw, side_effect=error)
    return adapter


@pytest.fixture
def adapters() -> dict:
    return {
        "hosted": _stub_adapter("hosted", '{"narrative": "From hosted"}'),
        "openrouter": _stub_adapter("openrouter", '{"narrative": "From OpenRouter"}'),
        "custom-local": _stub_adapter("custom-local", '{"description": "Tall"}'),
        "native-local": _stub_adapter("native-local", '{"narrative": "From local"}'),
    }


def _request(task="continue-story", language="en", **config) -> GenerationRequest:
    return GenerationRequest.model_validate({
        "task": task,
        "context": {"situation": "Rain.", "userAction": "I wait.", "language": language},
        "config": config,
    })


class TestRouterGenerate:
    async def test_routes_and_validates(self, settings, adapters) -> None:
        router = Router(settings, adapters=adapters)
        result = await router.generate(_request(llm={"source": "openrouter"}))
        assert result.ok
        assert result.data["narrative"] == "From OpenRouter"
        adapters["openrouter"].send.assert_awaited_once()
        adapters["hosted"].send.assert_not_awaited()

    async def test_missing_config_before_network(self, settings, adapters) -> None:
        adapters["hosted"].check_config.side_effect = AdapterError("missing_config", "No API key")
        router = Router(settings, adapters=adapters)
        result = await router.generate(_request())
        assert result.kind == "missing_config"
        adapters["hosted"].send.assert_not_awaited()

    async def test_vision_prompt_via_custom_local_has_no_story_sections(self, settings, adapters) -> None:
        router = Router(settings, adapters=adapters)
        result = await router.generate(_request(
            task="describe-appearance",
            llm={"source": "custom-local", "customLocal": {"apiUrl": "http://h"}},
        ))
        assert result.data == {"description": "Tall"}
        prompt = adapters["custom-local"].send.call_args[0][0]
        assert prompt.task == "describe-appearance"
        assert prompt.sections == ()

    async def test_malformed_output_salvaged(self, settings, adapters) -> None:
        adapters["hosted"] = _stub_adapter("hosted", "Lyra nods slowly.")
        router = Router(settings, adapters=adapters)
        result = await router.generate(_request())
        assert result.kind == "malformed_response"
        assert result.salvage == "Lyra nods slowly."

    async def test_network_error(self, settings, adapters) -> None:
        adapters["hosted"] = _stub_adapter("hosted", error=AdapterError("network_error", "Cannot connect"))
        result = await Router(settings, adapters=adapters).generate(_request())
        assert result.kind == "network_error"
        assert result.retryable

    async def test_quota_reclassified_and_localized(self, settings, adapters) -> None:
        error = AdapterError("http_error", "HTTP 429", status=429, body="{}")
        adapters["hosted"] = _stub_adapter("hosted", error=error)
        result = await Router(settings, adapters=adapters).generate(_request(language="fr"))
        assert result.kind == "quota_exceeded"
        assert result.message == "Le quota de l'API a été dépassé. Veuillez réessayer plus tard."
        assert result.retryable

    async def test_overload_from_body_text(self, settings, adapters) -> None:
        error = AdapterError("http_error", "HTTP 500", status=500, body=json.dumps(
            {"error": {"message": "The model is overloaded. Please try again later."}}
        ))
        adapters["openrouter"] = _stub_adapter("openrouter", error=error)
        result = await Router(settings, adapters=adapters).generate(_request(llm={"source": "openrouter"}))
        assert result.kind == "model_overloaded"
        assert result.message == "The AI model is currently overloaded. Please try again."

    async def test_plain_http_error_kept(self, settings, adapters) -> None:
        error = AdapterError("http_error", "HTTP 500", status=500, body="boom")
        adapters["hosted"] = _stub_adapter("hosted", error=error)
        result = await Router(settings, adapters=adapters).generate(_request())
        assert result.kind == "http_error"
        assert not result.retryable

    async def test_supervisor_error_returned_not_raised(self, settings, adapters) -> None:
        error = SupervisorError("model_not_found", "Model file not found: models/llama3.gguf")
        adapters["native-local"] = _stub_adapter("native-local", error=error)
        result = await Router(settings, adapters=adapters).generate(
            _request(llm={"source": "local", "local": {"model": "llama3.gguf"}})
        )
        assert result.kind == "model_not_found"
        assert "llama3.gguf" in result.message

    async def test_materialize_known_character(self, settings, adapters) -> None:
        adapters["hosted"] = _stub_adapter("hosted", '{"name": "Lyra"}')
        request = GenerationRequest.model_validate({
            "task": "materialize-character",
            "context": {"situation": "Lyra waves.", "characters": [{"name": "Lyra"}]},
        })
        result = await Router(settings, adapters=adapters).generate(request)
        assert result.kind == "validation_failed"


# ---------------------------------------------------------------------------
# Router.generate with real adapters
# ---------------------------------------------------------------------------

def _chat_response(content: str) -> MagicMock:
    resp = MagicMock()
    resp.status_code = 200
    resp.json.return_value = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    return resp


class TestRouterWithAdapters:
    OPENROUTER = {"source": "openrouter", "openRouter": {"apiKey": "sk-or", "model": "m/x"}}
    LOCAL = {"source": "local", "local": {"model": "m1.gguf"}}

    @pytest.mark.parametrize("levels", [1, 2, 3])
    async def test_openrouter_string_encoding_up_to_three_levels(self, settings, levels) -> None:
        content = json.dumps({"narrative": "Hi"})
        for _ in range(levels - 1):
            content = json.dumps(content)
        mock_post = AsyncMock(return_value=_chat_response(content))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await Router(settings).generate(_request(llm=self.OPENROUTER))
        assert result.ok
        assert result.data["narrative"] == "Hi"

    async def test_openrouter_four_levels_rejected(self, settings) -> None:
        content = json.dumps({"narrative": "Hi"})
        for _ in range(3):
            content = json.dumps(content)
        mock_post = AsyncMock(return_value=_chat_response(content))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await Router(settings).generate(_request(llm=self.OPENROUTER))
        assert result.kind == "validation_failed"
        assert result.violations[0].path == "$"

    async def test_unusable_local_reply_returned_not_raised(self, settings) -> None:
        supervisor = MagicMock()
        supervisor.complete = AsyncMock(
            side_effect=SupervisorError("empty_response", "Local model returned a non-JSON body")
        )
        result = await Router(settings, supervisor).generate(_request(llm=self.LOCAL))
        assert result.kind == "empty_response"

    async def test_non_object_local_reply_returned_not_raised(self, settings) -> None:
        supervisor = MagicMock()
        supervisor.complete = AsyncMock(return_value=["content"])
        result = await Router(settings, supervisor).generate(_request(llm=self.LOCAL))
        assert result.kind == "empty_response"
