"""ASGI entry points: ``app`` (FastAPI) and ``socket_app`` (Socket.IO wrapping it)."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tandem import obs
from tandem.api import chats, matching, ops
from tandem.api.errors import install_error_handlers
from tandem.domain.conversations import reaper
from tandem.domain.realtime.events import set_namespace
from tandem.domain.realtime.sockets import RealtimeNamespace
from tandem.infra import postgres
from tandem.infra.redis import redis_client
from tandem.infra.scheduler import JobScheduler
from tandem.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	await postgres.get_pool_or_none()
	scheduler: JobScheduler | None = None
	if settings.reaper_enabled:
		scheduler = JobScheduler()
		scheduler.start()
		scheduler.schedule_every(reaper.JOB_NAME, reaper.run_reaper, seconds=settings.reaper_interval_seconds)
		app.state.scheduler = scheduler
		logger.info("reaper scheduled every %ss", settings.reaper_interval_seconds)
	try:
		yield
	finally:
		if scheduler is not None:
			scheduler.shutdown()
		obs.shutdown()
		await postgres.close_pool()
		await redis_client.close()


app = FastAPI(title="Tandem Matchmaking", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = ["http://localhost:3000", "http://localhost:5173"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)
obs.init(app)

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
realtime_namespace = RealtimeNamespace()
sio.register_namespace(realtime_namespace)
set_namespace(realtime_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)

app.include_router(matching.router)
app.include_router(chats.router)
app.include_router(ops.router)
