#!/usr/bin/env python3
"""
HTTP surface for the podcast feed pipeline (aiohttp.web).

Routes:
  GET /api/podcast?url=&refresh=
  GET /api/podcast/episodes?url=&offset=&limit=&page=&refresh=

Every response carries a Cache-Control header; failures are always no-store.
"""

from math import ceil
from typing import Any, Dict, Optional

from aiohttp import web

from config import config, get_logger
from errors import BadInput, FeedError
from models import CacheHint
from service import PodcastFeedService, is_refresh_requested, parse_page_params
from telemetry import init_telemetry

# Module-specific logger
logger = get_logger("server")

SERVICE_KEY = web.AppKey("service", PodcastFeedService)


def _json(payload: Dict[str, Any], cache: CacheHint, status: int = 200) -> web.Response:
    response = web.json_response(payload, status=status)
    response.headers["Cache-Control"] = cache.header()
    return response


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Map pipeline failures to ``{"error": message}`` without leaking detail."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except FeedError as e:
        logger.warning(f"{request.method} {request.path} failed [{e.classification}/{type(e).__name__}]: {e.message}")
        return _json({"error": e.message}, CacheHint.no_store(), status=e.status)
    except Exception:
        logger.exception(f"Unexpected error handling {request.method} {request.path}")
        return _json({"error": FeedError.default_message}, CacheHint.no_store(), status=502)


async def _ensure_cache_control(request: web.Request, response: web.StreamResponse) -> None:
    if "Cache-Control" not in response.headers:
        response.headers["Cache-Control"] = "no-store"


async def handle_podcast(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    refresh = is_refresh_requested(request.query.get("refresh"))
    podcast, cache = await service.get_podcast(request.query.get("url", ""), refresh=refresh)
    return _json({"podcast": podcast.to_dict()}, cache)


async def handle_episodes(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    query = request.query
    url = query.get("url", "")
    if not url.strip():
        # Missing url wins over any pagination complaint
        raise BadInput()
    offset, limit = parse_page_params(query.get("offset"), query.get("limit"), query.get("page"))
    refresh = is_refresh_requested(query.get("refresh"))

    page, cache = await service.get_episodes_page(url, offset=offset, limit=limit, refresh=refresh)
    payload = page.to_dict()
    payload["pagination"] = {
        "total": page.total,
        "perPage": page.limit,
        "currentPage": page.offset // page.limit + 1,
        "totalPages": 1 if page.total == 0 else ceil(page.total / page.limit),
        "offset": page.offset,
    }
    return _json(payload, cache)


def create_app(service: Optional[PodcastFeedService] = None) -> web.Application:
    """Build the aiohttp application; tests pass their own service."""
    app = web.Application(middlewares=[error_middleware])
    app[SERVICE_KEY] = service or PodcastFeedService()
    app.router.add_get("/api/podcast", handle_podcast)
    app.router.add_get("/api/podcast/episodes", handle_episodes)
    app.on_response_prepare.append(_ensure_cache_control)
    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Serve until interrupted."""
    init_telemetry("podcast-feed-api")
    host = host or config.HOST
    port = port or config.PORT
    logger.info(f"Starting podcast feed API on {host}:{port}")
    logger.debug(f"Configuration: {config.get_config_summary()}")
    web.run_app(create_app(), host=host, port=port, print=None)
