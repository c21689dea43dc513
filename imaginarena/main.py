"""Создаёт FastAPI-приложение, настраивает логирование и подключает маршруты."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError

from imaginarena.core.config import settings
from imaginarena.core.errors import ArenaError, TransientIOError
from imaginarena.routers.api import router as api_router

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, debug=settings.debug)


def error_response(exc: ArenaError) -> JSONResponse:
    return JSONResponse({"error": exc.code, "detail": exc.message}, status_code=exc.status_code)


@app.exception_handler(ArenaError)
async def arena_error_handler(request: Request, exc: ArenaError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(exc)


# База недоступна или соединение оборвалось: клиент может повторить запрос.
@app.exception_handler(OperationalError)
@app.exception_handler(InterfaceError)
async def storage_error_handler(request: Request, exc: OperationalError | InterfaceError):
    logger.error("%s %s: database unavailable: %s", request.method, request.url.path, exc.orig)
    return error_response(TransientIOError("Storage is temporarily unavailable, try again"))


# Подключаем JSON API и WebSocket-подписки.
app.include_router(api_router)
