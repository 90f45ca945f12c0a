"""Observability package bootstrap."""

from __future__ import annotations

from fastapi import FastAPI

from eventrelay.obs import logging as obs_logging
from eventrelay.obs import middleware


def init(app: FastAPI) -> None:
	if getattr(app.state, "obs_initialised", False):
		return
	obs_logging.configure_logging()
	app.add_middleware(middleware.ObservabilityMiddleware)
	app.state.obs_initialised = True


__all__ = ["init"]
