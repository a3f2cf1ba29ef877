"""Logging, metrics and health for the chat service."""

from __future__ import annotations

from fastapi import FastAPI

from cargolink.obs import logging as obs_logging
from cargolink.obs import middleware
from cargolink.settings import settings


def init(app: FastAPI) -> None:
	"""Install JSON logging and the HTTP middleware once per app."""
	if not settings.obs_enabled or getattr(app.state, "obs_installed", False):
		return
	obs_logging.configure_logging()
	middleware.install(app)
	app.state.obs_installed = True


__all__ = ["init"]
