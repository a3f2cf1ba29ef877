"""ASGI entrypoint: the REST API with the /chat Socket.IO namespace mounted in front of it.

Run with `uvicorn cargolink.main:socket_app`.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cargolink.api import chat, ops
from cargolink.api.errors import install_error_handlers
from cargolink.domain.chat.service import get_store
from cargolink.domain.chat.sockets import ChatNamespace
from cargolink.infra import postgres
from cargolink.obs import init as obs_init
from cargolink.settings import settings

_LOG = logging.getLogger(__name__)

_DEV_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"]
_PROD_ORIGINS = ["https://app.cargolink.example"]


def allowed_origins() -> List[str]:
	"""Configured origins, with '*' expanded since credentials are allowed."""
	configured = [origin for origin in settings.cors_allow_origins if origin != "*"]
	if configured:
		return configured
	return list(_DEV_ORIGINS if settings.is_dev() else _PROD_ORIGINS)


@asynccontextmanager
async def lifespan(app: FastAPI):
	if settings.chat_store_backend == "postgres":
		await postgres.init_pool()
	store = get_store()
	_LOG.info("chat.store.ready", extra={"backend": settings.chat_store_backend})
	try:
		yield
	finally:
		feed = getattr(store, "feed", None)
		if feed is not None:
			feed.close()
		await postgres.close_pool()


def create_app() -> FastAPI:
	application = FastAPI(title="CargoLink Chat", lifespan=lifespan)
	install_error_handlers(application)
	application.add_middleware(
		CORSMiddleware,
		allow_origins=allowed_origins(),
		allow_credentials=True,
		allow_methods=["*"],
		allow_headers=["*"],
	)
	application.include_router(ops.router)
	application.include_router(chat.router)
	obs_init(application)
	return application


app = create_app()

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allowed_origins())
chat_namespace = ChatNamespace()
sio.register_namespace(chat_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
