"""FastAPI application factory for the flow engine service."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..config import ConfigError, load_config
from .routes import router

logger = logging.getLogger(__name__)

# Global state
_start_time: float = 0.0


def get_uptime() -> float:
    """Get server uptime in seconds."""
    return time.time() - _start_time


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    global _start_time

    # Startup
    _start_time = time.time()

    # Built-in components register on import
    from .. import components  # noqa: F401

    app_module = app.state.app_module
    if app_module:
        from ..runner import load_app
        load_app(app_module)
        logger.info("Loaded flows from %s", app_module)

    yield


def create_app(
    app_module: Optional[str] = None,
    config: Optional[dict[str, Any]] = None,
    title: str = "Incremental Flow Engine",
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        app_module: Module name or .py path registering flows, loaded at startup
        config: Resolved configuration (default: load_config())
    """
    from .. import __version__
    from ..runner import create_engine

    config = config if config is not None else load_config()

    app = FastAPI(
        title=title,
        version=__version__,
        description="HTTP API for inspecting and updating incremental indexing flows",
        lifespan=lifespan,
    )
    app.state.app_module = app_module
    app.state.config = config
    app.state.engine = create_engine(config)

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    return app


def main(argv: list[str] | None = None) -> int:
    """Serve the API with uvicorn."""
    import uvicorn

    from ..runner import setup_logging

    parser = argparse.ArgumentParser(
        prog="incremental-flow-server",
        description="Serve the flow engine HTTP API",
    )
    parser.add_argument("app", nargs="?", help="Module name or .py file registering flows")
    parser.add_argument("--config", type=Path, help="Config file path")
    parser.add_argument("--host", help="Bind host (default from config)")
    parser.add_argument("--port", type=int, help="Bind port (default from config)")
    parser.add_argument("--debug", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    setup_logging(debug=args.debug)
    try:
        config = load_config(args.config)
    except ConfigError as e:
        for error in e.errors:
            print(f"Config error: {error}", file=sys.stderr)
        return 1

    app = create_app(args.app, config)
    uvicorn.run(
        app,
        host=args.host or config["server"]["host"],
        port=args.port or config["server"]["port"],
        log_level="debug" if args.debug else "info",
    )
    return 0


def cli() -> None:
    sys.exit(main())
