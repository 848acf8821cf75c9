"""SmartStart provisioner relay server.

Exposes:
  WS   /ws       relay socket protocol (see :mod:`provisioner.ws.router`)
  GET  /health   liveness and driver state

Start with::

    python -m provisioner
    # or
    uvicorn provisioner.server:app --host 0.0.0.0 --port 3001
"""

from __future__ import annotations

import argparse
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from provisioner import __version__
from provisioner.config import Settings
from provisioner.context import RelayContext, build_context

logger = logging.getLogger(__name__)


def create_app(context: RelayContext | None = None) -> FastAPI:
    """Build the FastAPI app around *context* (built from the environment if omitted)."""
    context = context or build_context(Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down relay")
        await context.close()

    app = FastAPI(title="SmartStart Provisioner", version=__version__, lifespan=lifespan)
    app.state.relay = context
    app.add_api_websocket_route("/ws", context.router.handle_connection)

    @app.get("/health")
    async def health():
        lifecycle = context.lifecycle
        return {
            "status": "ok",
            "driver": lifecycle.state.value,
            "ready": lifecycle.is_ready,
            "port": lifecycle.port,
            "clients": len(context.router.clients),
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn

    parser = argparse.ArgumentParser(
        prog="python -m provisioner",
        description="Z-Wave SmartStart provisioning relay",
    )
    parser.add_argument("--host", default=None, help="Bind address (default: PROVISIONER_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: PROVISIONER_PORT or 3001)")
    parser.add_argument(
        "--zwave-port",
        metavar="URL",
        default=None,
        help="zwave-js-server URL (default: ZWAVE_PORT or ws://localhost:3000)",
    )
    parser.add_argument("--config", metavar="PATH", default=None, help="JSON config file")
    parser.add_argument("--log-level", default=None, help="Logging level (default: INFO)")
    args = parser.parse_args()

    env = dict(os.environ)
    if args.config:
        env["PROVISIONER_CONFIG"] = args.config
    settings = Settings.from_env(env)
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    if args.zwave_port:
        settings.zwave_port = args.zwave_port
    if args.log_level:
        settings.log_level = args.log_level

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(
        "Starting SmartStart provisioner on %s:%d (upstream %s)",
        settings.host, settings.port, settings.zwave_port,
    )
    uvicorn.run(create_app(build_context(settings)), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
