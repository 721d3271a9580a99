"""Router: GenerationRequest -> one adapter -> validator -> GenerationResult.

Selection is a pure table lookup on the ProviderConfig; the router holds no
provider-specific logic beyond it. Provider-side failures come back as
failed results, never as exceptions.
"""

from __future__ import annotations

import logging

from story_gateway.config import Settings
from story_gateway.errors import AdapterError, SupervisorError, classify_provider_failure, localized_message
from story_gateway.llm import Adapter, Backend, build_adapters
from story_gateway.models import GenerationRequest, GenerationResult, ProviderConfig, TaskKind
from story_gateway.prompts import build_prompt
from story_gateway.supervisor import LocalModelSupervisor
from story_gateway.validator import validate_response

logger = logging.getLogger(__name__)

VISION_TASKS = frozenset({"describe-appearance"})


def select_backend(task: TaskKind, config: ProviderConfig) -> Backend:
    """Pick exactly one backend for the task.

    Vision tasks read image.source first; only when that resolves to the
    hosted default does llm.source == "custom-local" take over. Other tasks
    read llm.source alone.
    """
    if task in VISION_TASKS:
        image_source = config.image.source
        if image_source == "openrouter":
            return "openrouter"
        if image_source == "local-sd":
            return "native-local"
        if config.llm.source == "custom-local":
            return "custom-local"
        return "hosted"

    source = config.llm.source
    if source == "openrouter":
        return "openrouter"
    if source == "local":
        return "native-local"
    return "hosted"


class Router:
    def __init__(
        self,
        settings: Settings,
        supervisor: LocalModelSupervisor | None = None,
        adapters: dict[Backend, Adapter] | None = None,
    ) -> None:
        self._adapters = adapters or build_adapters(settings, supervisor)

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        task, context, config = request.task, request.context, request.config
        backend = select_backend(task, config)
        adapter = self._adapters[backend]

        try:
            adapter.check_config(config)
        except AdapterError as e:
            logger.warning("%s: %s", backend, e)
            return GenerationResult.failure(e.kind, str(e))

        prompt = build_prompt(context, task)
        logger.debug("generate task=%s backend=%s", task, backend)

        try:
            raw = await adapter.send(prompt, config)
        except AdapterError as e:
            return self._provider_failure(e.kind, str(e), e.status, e.body, context.language)
        except SupervisorError as e:
            return self._provider_failure(e.kind, str(e), None, "", context.language)

        return validate_response(raw, task, context)

    def _provider_failure(
        self,
        kind: str,
        message: str,
        status: int | None,
        body: str,
        language: str,
    ) -> GenerationResult:
        if kind in ("http_error", "network_error"):
            reclassified = classify_provider_failure(status, body or message)
            if reclassified is not None:
                kind = reclassified
                message = localized_message(reclassified, language) or message
        logger.error("Generation failed (%s): %s", kind, message)
        return GenerationResult.failure(kind, message)
