"""Story Gateway launcher. Serves the local gateway API with uvicorn."""

import argparse
import logging
from dataclasses import replace
from pathlib import Path

import uvicorn

from story_gateway.config import load_settings
from story_gateway.server import create_app

ROOT = Path(__file__).parent


def main():
    settings = load_settings(ROOT / ".env")

    parser = argparse.ArgumentParser(description="Story Gateway")
    parser.add_argument("--host", default=settings.host,
                        help=f"Bind address (default: {settings.host})")
    parser.add_argument("--port", type=int, default=settings.port,
                        help=f"Gateway port (default: {settings.port})")
    parser.add_argument("--models-dir", type=Path, default=settings.models_dir,
                        help=f"Directory of .gguf model files (default: {settings.models_dir})")
    parser.add_argument("--log-level", default=settings.log_level,
                        help=f"Logging level (default: {settings.log_level})")
    args = parser.parse_args()

    settings = replace(
        settings,
        host=args.host,
        port=args.port,
        models_dir=args.models_dir,
        log_level=args.log_level.upper(),
    )
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print(f"Starting gateway on http://{settings.host}:{settings.port} ...")
    print(f"Models directory: {settings.models_dir.resolve()}")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port,
                log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
