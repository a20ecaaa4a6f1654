"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (settings store, summarizer, connectivity monitor)
- Register routes

One process drives at most one live call at a time; its supervisor is
kept on app.state.supervisor.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from audio.devices import SoundDeviceBackend
from config import AppConfig
from observability import logger
from server.routes import register_routes
from session.connectivity import ConnectivityNotifier, PollingConnectivityMonitor
from session.settings import SettingsStore
from session.summarizer import Summarizer, build_summarizer
from session.supervisor import BackendFactory
from transport.base import SessionOptions, TransportFactory, TransportSession
from transport.live_websocket import LiveWebSocketTransport


def _default_transport_factory(options: SessionOptions) -> TransportSession:
    return LiveWebSocketTransport(options)


def create_app(
    config: AppConfig | None = None,
    *,
    backend_factory: BackendFactory = SoundDeviceBackend,
    transport_factory: TransportFactory = _default_transport_factory,
    summarizer: Summarizer | None = None,
    connectivity: ConnectivityNotifier | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Collaborators are injectable so tests can run without audio hardware
    or network access.
    """
    config = config or AppConfig.load_from_env()
    logger.configure(enabled=config.enable_json_logs)

    settings = SettingsStore(config.settings_path)
    settings.load()

    if connectivity is None:
        connectivity = PollingConnectivityMonitor(
            host=config.connectivity_check_host,
            interval_s=config.connectivity_check_interval_s,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        monitor = app.state.connectivity
        if isinstance(monitor, PollingConnectivityMonitor):
            monitor.start()
        try:
            yield
        finally:
            supervisor = app.state.supervisor
            if supervisor is not None:
                await supervisor.shutdown()
            if isinstance(monitor, PollingConnectivityMonitor):
                await monitor.stop()

    app = FastAPI(title="Live Audio API", lifespan=lifespan)

    app.state.config = config
    app.state.settings = settings
    app.state.connectivity = connectivity
    app.state.summarizer = summarizer if summarizer is not None else build_summarizer(config)
    app.state.backend_factory = backend_factory
    app.state.transport_factory = transport_factory
    app.state.supervisor = None
    app.state.memory = None

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    register_routes(app)

    return app
