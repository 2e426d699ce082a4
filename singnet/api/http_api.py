"""
Local HTTP/JSON API
"""

import asyncio
import threading
from typing import Optional, Dict, Any

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import __version__
from .control import internal_error
from ..core.errors import VPNManagerError
from ..utils.logging_setup import get_logger

logger = get_logger(__name__)

# Seconds between checks for a vanished caller while connect runs
DISCONNECT_POLL_INTERVAL = 0.25


class SubscriptionIn(BaseModel):
    name: str
    url: str


class ConnectIn(BaseModel):
    config_id: Optional[str] = None
    server: Optional[str] = None


def create_app(service) -> FastAPI:
    """Build the API application around a VPNService"""
    app = FastAPI(title="singnet", version=__version__)
    app.state.service = service

    @app.exception_handler(VPNManagerError)
    async def _service_error(request: Request, exc: VPNManagerError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code,
                            content={'error': exc.to_dict()})

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):
        logger.error(f"{request.method} {request.url.path} crashed: {exc!r}")
        return JSONResponse(status_code=500,
                            content={'error': internal_error(exc)})

    @app.exception_handler(RequestValidationError)
    async def _request_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={'error': {
            'kind': 'validation',
            'message': '; '.join(
                f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
                for err in exc.errors()
            ),
        }})

    @app.get('/api/health')
    def health():
        return service.health()

    @app.get('/api/status')
    def status():
        return service.get_status()

    @app.get('/api/configs')
    def list_configs():
        return service.list_configs()

    @app.get('/api/configs/{config_id}/servers')
    def list_servers(config_id: str):
        return service.list_servers(config_id)

    @app.get('/api/subscriptions')
    def list_subscriptions():
        return service.list_subscriptions()

    @app.post('/api/subscriptions', status_code=201)
    def add_subscription(body: SubscriptionIn):
        return service.add_subscription(body.name, body.url)

    @app.post('/api/subscriptions/refresh')
    def refresh_all():
        return service.refresh_all()

    @app.post('/api/subscriptions/{subscription_id}/refresh')
    def refresh_subscription(subscription_id: str):
        return service.refresh_subscription(subscription_id)

    @app.delete('/api/subscriptions/{subscription_id}')
    def delete_subscription(subscription_id: str):
        return service.delete_subscription(subscription_id)

    @app.get('/api/settings')
    def get_settings():
        return service.get_settings()

    @app.put('/api/settings')
    def update_settings(body: Dict[str, Any] = Body(...)):
        return service.update_settings(body)

    @app.post('/api/settings/reset')
    def reset_settings():
        return service.reset_settings()

    @app.post('/api/connect')
    async def connect(request: Request, body: Optional[ConnectIn] = None):
        body = body or ConnectIn()
        cancel = threading.Event()
        task = asyncio.ensure_future(asyncio.to_thread(
            service.connect, body.config_id, body.server, cancel
        ))
        try:
            while not task.done():
                await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
                if not task.done() and await request.is_disconnected():
                    logger.warning("Caller went away during connect, stopping engine")
                    cancel.set()
                    break
            return await task
        except asyncio.CancelledError:
            cancel.set()
            raise

    @app.post('/api/disconnect')
    def disconnect():
        return service.disconnect()

    @app.get('/api/logs')
    def logs():
        return service.get_logs()

    @app.get('/api/singbox/status')
    def engine_status():
        return service.engine_status()

    @app.post('/api/singbox/install')
    def install_engine():
        return service.install_engine()

    @app.get('/api/sitecheck')
    def sitecheck(name: Optional[str] = None):
        return service.check_sites(name)

    return app
