import time
import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

# Load environment variables from .env file before anything else
load_dotenv()

from app.core.config import settings
from app.core.errors import ConsentEngineError
from app.core.logging import setup_logging, request_id_ctx
from app.api.router import api_router
from app.core.db import init_models
from app.modules.consent.sweeper import run_consent_sweeper
from app.modules.notifications.relay import run_notification_relay
from app.platform.provider_registry import registry


setup_logging()
app = FastAPI(title=settings.APP_NAME)

logger = logging.getLogger(__name__)

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    
    response = await call_next(request)
    
    process_time = (time.time() - start_time) * 1000
    formatted_process_time = f"{process_time:.2f}ms"
    
    logger.info(
        f"Request: {request.method} {request.url.path} - Response: {response.status_code} - Time: {formatted_process_time}"
    )
    
    return response

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id", "-")
    token = request_id_ctx.set(rid)
    try:
        return await call_next(request)
    finally:
        request_id_ctx.reset(token)

@app.exception_handler(ConsentEngineError)
async def consent_error_handler(request: Request, exc: ConsentEngineError):
    logger.info(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.critical(f"Unhandled exception for request {request.method} {request.url.path}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"message": "An internal server error occurred."},
    )


async def _stop(task: asyncio.Task | None):
    if not task:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass

@app.on_event("startup")
async def on_startup():
    await init_models()
    if settings.SWEEPER_ENABLED:
        app.state.sweeper_task = asyncio.create_task(run_consent_sweeper(settings.SWEEPER_INTERVAL_SECONDS))
    if settings.NOTIFICATION_RELAY_ENABLED:
        app.state.relay_task = asyncio.create_task(run_notification_relay())

@app.on_event("shutdown")
async def on_shutdown():
    await _stop(getattr(app.state, "sweeper_task", None))
    await _stop(getattr(app.state, "relay_task", None))
    if getattr(app.state, "relay_task", None):
        bus = registry.event_bus()
        if hasattr(bus, "close"):
            await bus.close()


app.include_router(api_router, prefix=settings.API_PREFIX)
