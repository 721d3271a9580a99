"""Backend adapters, one per provider family.

Every adapter matches the protocol:

    def check_config(self, config: ProviderConfig) -> None: ...
    async def send(self, prompt: Prompt, config: ProviderConfig) -> str: ...

`check_config` raises AdapterError("missing_config") before any network
call; `send` returns the raw model text with Markdown code fences removed,
or raises AdapterError (network_error, http_error, empty_response).

    HostedAdapter: google-genai SDK, schema-typed JSON output
    OpenRouterAdapter: POST {base}/chat/completions, bearer token
    CustomLocalAdapter: user-supplied OpenAI-compatible server
    NativeLocalAdapter: llama.cpp child via the supervisor (or the gateway)
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import mimetypes
import re
from typing import Any, Literal, Protocol

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from story_gateway.config import Settings
from story_gateway.errors import ERROR_KINDS, AdapterError
from story_gateway.models import ProviderConfig
from story_gateway.prompts import Prompt
from story_gateway.schemas import json_schema, schema_for
from story_gateway.supervisor import LocalModelSupervisor, completion_body
from story_gateway.validator import strip_code_fences

logger = logging.getLogger(__name__)

Backend = Literal["hosted", "openrouter", "custom-local", "native-local"]

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
IMAGE_TAG = "[img-1]"

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class Adapter(Protocol):
    name: Backend

    def check_config(self, config: ProviderConfig) -> None: ...

    async def send(self, prompt: Prompt, config: ProviderConfig) -> str: ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def normalize_chat_url(base_url: str) -> str:
    """Ensure the URL ends in exactly one /v1/chat/completions.

    "http://h:1234/"                      -> "http://h:1234/v1/chat/completions"
    "http://h:1234/v1"                    -> "http://h:1234/v1/chat/completions"
    "http://h:1234/v1/chat/completions/"  -> "http://h:1234/v1/chat/completions"
    """
    url = base_url.strip().rstrip("/")
    if url.endswith("/chat/completions"):
        url = url[: -len("/chat/completions")].rstrip("/")
    if url.endswith("/v1"):
        url = url[: -len("/v1")].rstrip("/")
    return url + CHAT_COMPLETIONS_PATH


def parse_data_uri(url: str) -> tuple[str, str] | None:
    """Return (mime_type, base64_payload) for a base64 data URI, else None."""
    match = _DATA_URI_RE.match(url.strip())
    if not match:
        return None
    return match.group("mime"), match.group("data")


def _bearer(api_key: str) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


async def _post_json(
    backend: str,
    url: str,
    body: dict[str, Any],
    headers: dict[str, str],
    timeout: float,
) -> dict[str, Any]:
    """POST a JSON body and return the decoded JSON response."""
    logger.debug("%s request url=%s body_len=%d", backend, url, len(json.dumps(body)))
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(url, json=body, headers=headers)
    except httpx.TimeoutException as e:
        raise AdapterError("network_error", f"{backend} timed out after {timeout}s") from e
    except httpx.TransportError as e:
        raise AdapterError("network_error", f"Cannot connect to {backend} at {url}") from e

    if resp.status_code >= 400:
        logger.error("%s returned HTTP %d", backend, resp.status_code)
        raise AdapterError(
            "http_error",
            f"{backend} returned HTTP {resp.status_code}",
            status=resp.status_code,
            body=resp.text,
        )
    try:
        data = resp.json()
    except ValueError as e:
        raise AdapterError("empty_response", f"{backend} returned a non-JSON body") from e
    if not isinstance(data, dict):
        raise AdapterError("empty_response", f"{backend} returned an unexpected body")
    return data


def _chat_content(backend: str, data: dict[str, Any]) -> str:
    """Extract choices[0].message.content from an OpenAI-style response."""
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = None
    if not isinstance(content, str) or not content.strip():
        raise AdapterError("empty_response", f"{backend} returned no content")
    return strip_code_fences(content)


# ---------------------------------------------------------------------------
# Hosted (google-genai)
# ---------------------------------------------------------------------------

# Union-typed suggestion values are outside the hosted schema dialect;
# these tasks get plain JSON mode and rely on the validator.
_UNTYPED_TASKS = frozenset({"creative-assist"})


def _image_part(url: str) -> types.Part:
    parsed = parse_data_uri(url)
    if parsed is not None:
        mime, data = parsed
        try:
            raw = base64.b64decode(data, validate=True)
        except binascii.Error as e:
            raise AdapterError("missing_config", "Attached image is not valid base64") from e
        return types.Part.from_bytes(data=raw, mime_type=mime)
    mime = mimetypes.guess_type(url)[0] or "image/jpeg"
    return types.Part.from_uri(file_uri=url, mime_type=mime)


class HostedAdapter:
    """Hosted model via the google-genai SDK, with server-side schema enforcement."""

    name: Backend = "hosted"

    def __init__(self, settings: Settings) -> None:
        self._default_key = settings.gemini_api_key
        self._default_model = settings.gemini_model

    def _credentials(self, config: ProviderConfig) -> tuple[str, str]:
        hosted = config.llm.gemini
        return hosted.api_key or self._default_key, hosted.model or self._default_model

    def check_config(self, config: ProviderConfig) -> None:
        api_key, _ = self._credentials(config)
        if not api_key:
            raise AdapterError("missing_config", "No API key configured for the hosted model")

    def _contents(self, prompt: Prompt) -> list[types.Content]:
        contents = [
            types.Content(
                role="user" if turn.role == "user" else "model",
                parts=[types.Part(text=turn.content)],
            )
            for turn in prompt.history
            if turn.content
        ]
        parts = [_image_part(url) for url in prompt.images]
        parts.append(types.Part(text=prompt.user_text))
        contents.append(types.Content(role="user", parts=parts))
        return contents

    async def send(self, prompt: Prompt, config: ProviderConfig) -> str:
        api_key, model = self._credentials(config)
        generation_config = types.GenerateContentConfig(
            system_instruction=prompt.instruction,
            response_mime_type="application/json",
            response_schema=None if prompt.task in _UNTYPED_TASKS else schema_for(prompt.task),
        )
        logger.debug("hosted request model=%s task=%s", model, prompt.task)
        client = genai.Client(api_key=api_key)
        try:
            response = await client.aio.models.generate_content(
                model=model,
                contents=self._contents(prompt),
                config=generation_config,
            )
        except genai_errors.APIError as e:
            logger.error("hosted model returned HTTP %s: %s", e.code, e.message)
            raise AdapterError(
                "http_error",
                f"Hosted model returned HTTP {e.code}",
                status=e.code,
                body=e.message or str(e),
            ) from e
        except httpx.TimeoutException as e:
            raise AdapterError("network_error", "Hosted model timed out") from e
        except httpx.TransportError as e:
            raise AdapterError("network_error", "Cannot connect to the hosted model") from e

        text = response.text
        if not text or not text.strip():
            raise AdapterError("empty_response", "Hosted model returned no content")
        logger.debug("hosted response len=%d", len(text))
        return strip_code_fences(text)


# ---------------------------------------------------------------------------
# OpenRouter
# ---------------------------------------------------------------------------

class OpenRouterAdapter:
    """OpenAI-style chat completions on OpenRouter.

    Some models answer with the JSON payload encoded as a JSON string; the
    adapter unwraps that one level so the validator sees the object text.
    """

    name: Backend = "openrouter"

    def __init__(self, settings: Settings) -> None:
        self._url = f"{settings.openrouter_base_url}/chat/completions"
        self._timeout = settings.http_timeout
        self._title = settings.app_title
        self._referer = settings.cors_origins[0] if settings.cors_origins else ""

    def check_config(self, config: ProviderConfig) -> None:
        settings = config.llm.open_router
        if not settings.api_key:
            raise AdapterError("missing_config", "No OpenRouter API key configured")
        if not settings.model:
            raise AdapterError("missing_config", "No OpenRouter model configured")

    def build_request(self, prompt: Prompt, config: ProviderConfig) -> tuple[dict, dict]:
        """Return (headers, body)."""
        settings = config.llm.open_router
        headers = _bearer(settings.api_key)
        if self._referer:
            headers["HTTP-Referer"] = self._referer
        if self._title:
            headers["X-Title"] = self._title
        body: dict[str, Any] = {
            "model": settings.model,
            "messages": prompt.as_messages(),
            "response_format": {"type": "json_object"},
        }
        if settings.max_tokens:
            body["max_tokens"] = settings.max_tokens
        return headers, body

    async def send(self, prompt: Prompt, config: ProviderConfig) -> str:
        headers, body = self.build_request(prompt, config)
        data = await _post_json("OpenRouter", self._url, body, headers, self._timeout)
        content = _chat_content("OpenRouter", data)
        try:
            decoded = json.loads(content)
        except json.JSONDecodeError:
            return content
        if isinstance(decoded, str):
            logger.debug("OpenRouter content was string-encoded; unwrapped once")
            return strip_code_fences(decoded)
        return content


# ---------------------------------------------------------------------------
# Custom local (OpenAI-compatible)
# ---------------------------------------------------------------------------

class CustomLocalAdapter:
    """User-run OpenAI-compatible server (LM Studio, Ollama, vLLM, ...)."""

    name: Backend = "custom-local"

    def __init__(self, settings: Settings) -> None:
        self._timeout = settings.http_timeout

    def check_config(self, config: ProviderConfig) -> None:
        if not config.llm.custom_local.api_url.strip():
            raise AdapterError("missing_config", "No URL configured for the custom local server")

    def build_request(self, prompt: Prompt, config: ProviderConfig) -> tuple[str, dict, dict]:
        """Return (url, headers, body)."""
        settings = config.llm.custom_local
        body: dict[str, Any] = {
            "messages": prompt.as_messages(),
            "temperature": 0.5 if prompt.task == "materialize-character" else 0.7,
        }
        if settings.model:
            body["model"] = settings.model
        if prompt.task == "describe-appearance":
            body["max_tokens"] = 300
        return normalize_chat_url(settings.api_url), _bearer(settings.api_key), body

    async def send(self, prompt: Prompt, config: ProviderConfig) -> str:
        url, headers, body = self.build_request(prompt, config)
        data = await _post_json("custom local server", url, body, headers, self._timeout)
        return _chat_content("custom local server", data)


# ---------------------------------------------------------------------------
# Native local (llama.cpp)
# ---------------------------------------------------------------------------

class NativeLocalAdapter:
    """Raw completion against the supervised llama.cpp server.

    With a supervisor (in-process), the adapter starts or switches the model
    itself and proxies the completion. Without one, it talks to a running
    gateway's POST /generate, which does the same on the other side.
    """

    name: Backend = "native-local"

    def __init__(self, settings: Settings, supervisor: LocalModelSupervisor | None = None) -> None:
        self._supervisor = supervisor
        self._gateway_url = settings.gateway_url
        self._timeout = settings.http_timeout
        self._n_predict = settings.llama_n_predict

    def check_config(self, config: ProviderConfig) -> None:
        if not config.llm.local.model:
            raise AdapterError("missing_config", "No local model selected")

    def _image_data(self, prompt: Prompt) -> list[dict[str, Any]]:
        image_data = []
        for i, url in enumerate(prompt.images, start=1):
            parsed = parse_data_uri(url)
            if parsed is None:
                raise AdapterError(
                    "missing_config", "The local model only accepts images as base64 data URIs"
                )
            image_data.append({"data": parsed[1], "id": i})
        return image_data

    async def send(self, prompt: Prompt, config: ProviderConfig) -> str:
        model = config.llm.local.model
        image_data = self._image_data(prompt)
        text = prompt.as_text(image_tag=IMAGE_TAG if image_data else "")
        schema = json_schema(prompt.task)

        if self._supervisor is not None:
            data = await self._supervisor.complete(model, completion_body(
                text, schema, n_predict=self._n_predict, image_data=image_data,
            ))
        else:
            body: dict[str, Any] = {"model": model, "prompt": text, "json_schema": schema}
            if image_data:
                body["image_data"] = image_data
            try:
                data = await _post_json(
                    "local gateway", f"{self._gateway_url}/generate", body, _bearer(""), self._timeout,
                )
            except AdapterError as e:
                raise _gateway_error(e) from e

        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise AdapterError("empty_response", "Local model returned no content")
        return strip_code_fences(content)


def _gateway_error(error: AdapterError) -> AdapterError:
    """Recover the supervisor's error kind from a gateway error body."""
    if error.kind != "http_error" or not error.body:
        return error
    try:
        payload = json.loads(error.body)
    except json.JSONDecodeError:
        return error
    if isinstance(payload, dict) and payload.get("kind") in ERROR_KINDS:
        return AdapterError(
            payload["kind"], str(payload.get("error") or error), status=error.status, body=error.body,
        )
    return error


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def build_adapters(
    settings: Settings,
    supervisor: LocalModelSupervisor | None = None,
) -> dict[Backend, Adapter]:
    return {
        "hosted": HostedAdapter(settings),
        "openrouter": OpenRouterAdapter(settings),
        "custom-local": CustomLocalAdapter(settings),
        "native-local": NativeLocalAdapter(settings, supervisor),
    }
