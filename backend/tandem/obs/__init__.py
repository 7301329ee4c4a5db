"""Observability wiring: request middleware, JSON logs and optional tracing."""

from __future__ import annotations

from fastapi import FastAPI

from tandem.obs import logging as obs_logging
from tandem.obs import middleware, tracing
from tandem.settings import settings

_installed_on: set[int] = set()


def init(app: FastAPI) -> None:
	"""Install once per app; logging and tracing only when observability is on."""
	if id(app) in _installed_on:
		return
	middleware.install(app)
	if settings.obs_enabled:
		obs_logging.configure_logging()
		tracing.init_tracing(app)
	_installed_on.add(id(app))


def shutdown() -> None:
	tracing.shutdown_tracing()


__all__ = ["init", "shutdown"]
