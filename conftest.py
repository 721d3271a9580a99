from pathlib import Path

import pytest

from story_gateway.config import Settings


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    """Empty models directory; tests drop .gguf files into it."""
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def llama_binary(tmp_path: Path) -> Path:
    path = tmp_path / "llama.cpp" / "server"
    path.parent.mkdir()
    path.write_text("#!/bin/sh\n")
    return path


@pytest.fixture
def settings(models_dir: Path, llama_binary: Path) -> Settings:
    return Settings(
        models_dir=models_dir,
        llama_server_path=llama_binary,
        startup_timeout=1.0,
        http_timeout=5.0,
        gemini_api_key="",
    )
