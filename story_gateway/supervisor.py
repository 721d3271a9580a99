"""Local inference process supervisor.

Owns at most one llama.cpp server child process and proxies completion
requests to it. The state machine is

    Stopped -> Starting(model) -> Running(model, port)
    Running(a) -> Starting(b)   (model switch: the old child is stopped first)
    any -> Stopped              (shutdown, failed start, unexpected exit)

All transitions happen under one asyncio.Lock, so a switch requested while
another is in flight waits for it to settle and two children never bind
the port at the same time. `complete` keeps the lock until the child has
answered, so a switch never kills a completion that is still running. Readiness is a one-shot future resolved by the
task that reads the child's output.
"""

from __future__ import annotations

import asyncio
import atexit
import contextlib
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from story_gateway.config import Settings
from story_gateway.errors import SupervisorError

logger = logging.getLogger(__name__)

READY_MARKERS = ("server is running", "server is listening", "http server listening")
ERROR_MARKERS = ("error:", "failed to load model")
MODEL_SUFFIX = ".gguf"
STOP_TIMEOUT = 5.0

DEFAULT_TEMPERATURE = 0.7
DEFAULT_STOP = ["\nUSER:"]


@dataclass(frozen=True)
class Stopped:
    pass


@dataclass(frozen=True)
class Starting:
    model_id: str


@dataclass(frozen=True)
class Running:
    model_id: str
    port: int


ModelProcessState = Stopped | Starting | Running

SpawnFn = Callable[..., Awaitable[Any]]


async def _spawn(*args: str) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )


def completion_body(
    prompt: str,
    json_schema: dict[str, Any] | None = None,
    *,
    n_predict: int = 1024,
    temperature: float = DEFAULT_TEMPERATURE,
    image_data: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Body for llama.cpp's POST /completion (non-streaming)."""
    body: dict[str, Any] = {
        "prompt": prompt,
        "n_predict": n_predict,
        "temperature": temperature,
        "stop": list(DEFAULT_STOP),
        "stream": False,
    }
    if json_schema:
        body["json_schema"] = json_schema
    if image_data:
        body["image_data"] = image_data
    return body


class LocalModelSupervisor:
    """Spawns, switches and stops the local llama.cpp server.

    Args:
        settings: models dir, binary path, port and launch parameters are
                  read once here.
        spawn:    coroutine function taking the argv and returning a
                  process object (asyncio.subprocess.Process by default).
    """

    def __init__(self, settings: Settings, spawn: SpawnFn | None = None) -> None:
        self._models_dir = settings.models_dir
        self._binary = settings.llama_server_path
        self._port = settings.llama_port
        self._threads = settings.llama_threads
        self._ctx_size = settings.llama_ctx_size
        self._n_predict = settings.llama_n_predict
        self._startup_timeout = settings.startup_timeout
        self._http_timeout = settings.http_timeout
        self._spawn = spawn or _spawn
        self._lock = asyncio.Lock()
        self._state: ModelProcessState = Stopped()
        self._process: Any = None
        self._reader: asyncio.Task | None = None
        self._exit_hook_registered = False

    @property
    def state(self) -> ModelProcessState:
        return self._state

    @property
    def n_predict(self) -> int:
        return self._n_predict

    # ── Discovery ───────────────────────────────────────

    def list_available_models(self) -> list[str]:
        """Model files in the models directory, sorted. Never touches the process."""
        if not self._models_dir.is_dir():
            return []
        return sorted(
            p.name for p in self._models_dir.iterdir()
            if p.is_file() and p.suffix == MODEL_SUFFIX
        )

    # ── Lifecycle ───────────────────────────────────────

    async def ensure_running(self, model_id: str) -> Running:
        """Make `model_id` the running model, starting or switching as needed."""
        async with self._lock:
            return await self._ensure(model_id)

    async def complete(self, model_id: str, body: dict[str, Any]) -> dict[str, Any]:
        """Run one completion on `model_id`, starting or switching to it first.

        The lock is held until the child answers; callers asking for another
        model wait for this completion before their switch happens.
        """
        async with self._lock:
            await self._ensure(model_id)
            return await self.proxy_completion(body)

    async def _ensure(self, model_id: str) -> Running:
        state = self._state
        if isinstance(state, Running) and state.model_id == model_id:
            return state

        model_path = self._models_dir / model_id
        if not model_id or os.path.basename(model_id) != model_id or not model_path.is_file():
            raise SupervisorError("model_not_found", f"Model file not found: {model_path}")
        if not self._binary.is_file():
            raise SupervisorError(
                "binary_not_found", f"llama.cpp server binary not found: {self._binary}"
            )

        if self._process is not None:
            logger.info("Switching local model %s -> %s", _model_of(state), model_id)
            await self._stop_process()
        return await self._start(model_id, str(model_path))

    async def _start(self, model_id: str, model_path: str) -> Running:
        self._state = Starting(model_id)
        args = [
            str(self._binary),
            "--model", model_path,
            "--port", str(self._port),
            "--n-predict", str(self._n_predict),
            "--threads", str(self._threads),
            "--ctx-size", str(self._ctx_size),
        ]
        logger.info("Starting local model %s on port %d", model_id, self._port)
        try:
            process = await self._spawn(*args)
        except OSError as e:
            self._state = Stopped()
            raise SupervisorError(
                "process_start_failed", f"Could not launch {self._binary}: {e}"
            ) from e

        self._process = process
        self._register_exit_hook()
        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._reader = asyncio.create_task(self._watch(process, model_id, ready))

        try:
            await asyncio.wait_for(ready, self._startup_timeout)
        except asyncio.TimeoutError:
            logger.error("Local model %s not ready after %ss", model_id, self._startup_timeout)
            await self._stop_process()
            raise SupervisorError(
                "process_start_timeout",
                f"Local model {model_id} did not become ready within {self._startup_timeout}s",
            ) from None
        except SupervisorError as e:
            logger.error("Local model %s failed to start: %s", model_id, e)
            await self._stop_process()
            raise

        self._state = Running(model_id, self._port)
        logger.info("Local model %s ready", model_id)
        return self._state

    async def _watch(self, process: Any, model_id: str, ready: asyncio.Future[None]) -> None:
        """Relay child output to the log and resolve readiness."""
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            logger.debug("[llama] %s", text)
            if ready.done():
                continue
            lowered = text.lower()
            if any(marker in lowered for marker in READY_MARKERS):
                ready.set_result(None)
            elif any(marker in lowered for marker in ERROR_MARKERS):
                ready.set_exception(SupervisorError("process_start_failed", text))

        code = await process.wait()
        if not ready.done():
            ready.set_exception(SupervisorError(
                "process_start_failed",
                f"Local model process exited with code {code} before it was ready",
            ))
        elif self._process is process:
            logger.warning("Local model %s exited unexpectedly (code %s)", model_id, code)
            self._process = None
            self._reader = None
            self._state = Stopped()

    async def _stop_process(self) -> None:
        process, self._process = self._process, None
        reader, self._reader = self._reader, None
        self._state = Stopped()
        if process is not None and process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), STOP_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Local model process ignored SIGTERM; killing it")
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    async def shutdown(self) -> None:
        """Terminate the child, if any, and go to Stopped."""
        async with self._lock:
            if self._process is not None:
                logger.info("Stopping local model %s", _model_of(self._state))
            await self._stop_process()

    def terminate_now(self) -> None:
        """Synchronous SIGTERM to the child; registered with atexit."""
        process = self._process
        if process is None or process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            os.kill(process.pid, signal.SIGTERM)

    def _register_exit_hook(self) -> None:
        if not self._exit_hook_registered:
            atexit.register(self.terminate_now)
            self._exit_hook_registered = True

    # ── Proxy ───────────────────────────────────────────

    async def proxy_completion(self, body: dict[str, Any]) -> dict[str, Any]:
        """POST `body` to the running child's /completion and return its JSON as-is."""
        state = self._state
        if not isinstance(state, Running):
            raise SupervisorError("process_not_running", "No local model is running")

        url = f"http://127.0.0.1:{state.port}/completion"
        logger.debug("completion model=%s prompt_len=%d", state.model_id, len(body.get("prompt", "")))
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout) as client:
                resp = await client.post(url, json=body)
                resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise SupervisorError(
                "network_error", f"Local model timed out after {self._http_timeout}s"
            ) from e
        except httpx.HTTPStatusError as e:
            raise SupervisorError(
                "http_error", f"Local model returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TransportError as e:
            raise SupervisorError("network_error", f"Cannot connect to local model at {url}") from e
        try:
            data = resp.json()
        except ValueError as e:
            raise SupervisorError("empty_response", "Local model returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise SupervisorError("empty_response", "Local model returned an unexpected body")
        return data


def _model_of(state: ModelProcessState) -> str:
    return getattr(state, "model_id", "-")
