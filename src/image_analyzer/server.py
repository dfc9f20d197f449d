"""HTTP server exposing the analysis as POST /analyze."""

import asyncio
import dataclasses
import json
import logging
from typing import Callable, Optional

from aiohttp import web

from .analysis import CONTENT_TYPES, analyze_image, render_summary
from .config import Settings
from .core.types import ImageSource
from .exceptions import AnalyzerError, ApplyAbortedError, WorkspaceError
from .models import AnalyzeOptions

logger = logging.getLogger(__name__)

SourceFactory = Callable[[str], ImageSource]

SETTINGS_KEY = web.AppKey("settings", Settings)
SEMAPHORE_KEY = web.AppKey("semaphore", asyncio.Semaphore)
SOURCE_FACTORY_KEY = web.AppKey("source_factory", object)


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


def public_error_message(error: BaseException) -> str:
    """Describe a pull failure without leaking host filesystem paths."""
    if isinstance(error, WorkspaceError):
        return "Failed to prepare working storage"
    if isinstance(error, ApplyAbortedError):
        cause = error.cause
        if isinstance(cause, AnalyzerError) and not isinstance(cause, WorkspaceError):
            detail = str(cause)
        else:
            detail = type(cause).__name__
        return f"Failed to apply layer {error.ordinal} ({error.digest[:19]}): {detail}"
    if isinstance(error, AnalyzerError):
        return str(error)
    return "Image analysis failed"


def _request_options(settings: Settings, data: object) -> AnalyzeOptions:
    if data is None:
        return settings.analyze.options()
    if not isinstance(data, dict):
        raise ValueError("options must be an object")
    defaults = dataclasses.asdict(settings.analyze.options())
    return AnalyzeOptions.from_dict({**defaults, **data})


async def handle_analyze(request: web.Request) -> web.Response:
    settings = request.app[SETTINGS_KEY]

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error(400, "Request body must be valid JSON")
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object")

    image_ref = body.get("image_ref")
    if not image_ref or not isinstance(image_ref, str):
        return _error(400, "image_ref is required")

    fmt = body.get("format") or "json"
    if fmt not in CONTENT_TYPES:
        return _error(400, f"Unsupported output format: {fmt}")

    try:
        options = _request_options(settings, body.get("options"))
    except ValueError as e:
        return _error(400, str(e))

    factory = request.app[SOURCE_FACTORY_KEY]
    async with request.app[SEMAPHORE_KEY]:
        try:
            summary = await analyze_image(
                image_ref,
                settings,
                options,
                source=factory(image_ref) if factory is not None else None,
            )
        except Exception as e:
            logger.error(
                "Analysis of %s failed: %s", image_ref, e, extra={"image": image_ref}
            )
            return _error(500, f"Failed to extract image: {public_error_message(e)}")

    return web.Response(
        text=render_summary(summary, fmt), content_type=CONTENT_TYPES[fmt]
    )


async def handle_readiness(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


def create_app(
    settings: Optional[Settings] = None, source_factory: Optional[SourceFactory] = None
) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        settings: Application settings
        source_factory: Builds the image source for a reference; by default a
            RegistryClient configured from settings is used per request

    Returns:
        Configured application
    """
    settings = settings or Settings()
    app = web.Application(client_max_size=settings.server.max_request_size)
    app[SETTINGS_KEY] = settings
    app[SEMAPHORE_KEY] = asyncio.Semaphore(settings.server.max_concurrent_analyses)
    app[SOURCE_FACTORY_KEY] = source_factory
    app.router.add_post("/analyze", handle_analyze)
    app.router.add_get("/readiness", handle_readiness)
    return app


def serve(settings: Settings) -> None:
    """Run the server until interrupted."""
    host, _, port = settings.address().rpartition(":")
    logger.info("Starting server on %s", settings.address())
    web.run_app(
        create_app(settings),
        host=host,
        port=int(port),
        keepalive_timeout=settings.server.read_timeout,
        print=None,
    )
