"""Gateway settings, read from the environment (and a .env file if present)."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent.parent

DEFAULT_CORS_ORIGINS = ("http://localhost:9002",)


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 9000
    llama_port: int = 8080
    models_dir: Path = Path("models")
    llama_server_path: Path = Path("llama.cpp") / "server"
    llama_threads: int = 6
    llama_ctx_size: int = 2048
    llama_n_predict: int = 1024
    startup_timeout: float = 120.0
    http_timeout: float = 120.0
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    cors_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS
    app_title: str = "Story Gateway"
    log_level: str = "INFO"

    @property
    def gateway_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def load_settings(env_file: Path | None = None) -> Settings:
    """Build Settings from environment variables.

    Values already in the environment win over the .env file.
    """
    load_dotenv(env_file or ROOT / ".env")
    origins = os.getenv("CORS_ORIGINS", "")
    return Settings(
        host=os.getenv("GATEWAY_HOST", "127.0.0.1"),
        port=_int("GATEWAY_PORT", 9000),
        llama_port=_int("LLAMA_SERVER_PORT", 8080),
        models_dir=Path(os.getenv("MODELS_DIR", "models")),
        llama_server_path=Path(os.getenv("LLAMA_SERVER_PATH", str(Path("llama.cpp") / "server"))),
        llama_threads=_int("LLAMA_THREADS", 6),
        llama_ctx_size=_int("LLAMA_CTX_SIZE", 2048),
        llama_n_predict=_int("LLAMA_N_PREDICT", 1024),
        startup_timeout=_float("LLAMA_STARTUP_TIMEOUT", 120.0),
        http_timeout=_float("LLM_HTTP_TIMEOUT", 120.0),
        openrouter_base_url=os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/"),
        gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
        cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip())
        or DEFAULT_CORS_ORIGINS,
        app_title=os.getenv("APP_TITLE", "Story Gateway"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
