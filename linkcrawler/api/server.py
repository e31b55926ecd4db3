"""
HTTP API for creating crawl requests and reading their status and results.

    POST /crawl           {"url": "...", "levels": 2}  ->  201 {"id": 1}
    GET  /status/<id>     ->  {"url", "completed", "failed", "in_progress", "total"}
    GET  /results/<id>    ->  {"host": count, ...}   (409 until every task is done)
"""

import json
import logging
from typing import Optional

from aiohttp import web

from ..crawler.results import CrawlNotCompletedError
from ..service import CrawlService
from ..storage.errors import CrawlRequestNotFound, DatabaseError

SERVICE_KEY = web.AppKey('service', CrawlService)

logger = logging.getLogger(__name__)


def _error(status: int, message: str) -> web.Response:
    return web.json_response({'error': message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Log every request and turn storage errors into JSON responses."""
    logger.info(f"New request: {request.method} {request.path}")
    try:
        return await handler(request)
    except CrawlRequestNotFound as e:
        return _error(404, str(e))
    except DatabaseError as e:
        logger.error(f"Error from request {request.path}: {e}")
        return _error(500, "Storage error")


async def create_crawl(request: web.Request) -> web.Response:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return _error(400, "Request body must be JSON")

    if not isinstance(body, dict) or 'url' not in body or 'levels' not in body:
        return _error(400, "Both 'url' and 'levels' are required")

    service = request.app[SERVICE_KEY]
    try:
        crawl_request_id = await service.create(body['url'], body['levels'])
    except ValueError as e:
        return _error(400, str(e))

    return web.json_response({'id': crawl_request_id}, status=201)


async def crawl_status(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    status = await service.status(int(request.match_info['id']))
    return web.json_response(status.to_dict())


async def crawl_results(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    try:
        hosts = await service.results(int(request.match_info['id']))
    except CrawlNotCompletedError as e:
        return _error(409, str(e))
    return web.json_response(hosts)


def create_app(service: CrawlService) -> web.Application:
    """Build the aiohttp application around a crawl service."""
    app = web.Application(middlewares=[error_middleware])
    app[SERVICE_KEY] = service
    app.router.add_post('/crawl', create_crawl)
    app.router.add_get(r'/status/{id:\d+}', crawl_status)
    app.router.add_get(r'/results/{id:\d+}', crawl_results)
    return app


class ApiServer:
    """Runs the API application on a TCP port."""

    def __init__(self, service: CrawlService, host: str = '0.0.0.0', port: int = 8080):
        self.app = create_app(service)
        self.host = host
        self.port = port
        self.runner: Optional[web.AppRunner] = None

    async def start(self):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info(f"API server listening on {self.host}:{self.port}")

    async def stop(self):
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            logger.info("API server stopped")
