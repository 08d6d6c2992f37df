"""
Companion Core - Main Entry Point.

Builds a ``ChatCore`` from the environment-driven settings and serves it
over the REST API.

Architecture:
    - config.py: Configuration management
    - conversation/core.py: Turn orchestration
    - plugins/: Plugin contracts and dispatch
    - services/: TTS and ASR strategies
    - conversation/server.py: REST surface
    - main.py: Orchestration and entry point
"""

from __future__ import annotations

import argparse
import logging

import uvicorn

from companion.config import Settings, get_settings
from companion.conversation.core import ChatCore
from companion.conversation.server import create_app

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_core(settings: Settings) -> ChatCore:
    """Create the chat core and restore its saved history if autosave is on."""
    core = ChatCore.from_settings(settings)
    if settings.history.autosave:
        core.load_history()
        logger.info("Restored %d message(s) of history", len(core.history))
    return core


def run(settings: Settings) -> None:
    core = build_core(settings)
    app = create_app(core)
    logger.info(
        "Serving %s chat core on http://%s:%d", core.name, settings.host, settings.port
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


def cli() -> None:
    parser = argparse.ArgumentParser(description="Companion Core REST server")
    parser.add_argument("--host", help="Bind address (overrides COMPANION_HOST)")
    parser.add_argument("--port", type=int, help="Bind port (overrides COMPANION_PORT)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    settings = get_settings()
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    if args.debug:
        settings.log_level = "DEBUG"

    configure_logging(settings.log_level)
    try:
        run(settings)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    cli()
