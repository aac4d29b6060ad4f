import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from connection import Connection
from constants import CORS_ORIGINS, LOG_FILE, LOG_LEVEL, SESSION_MAX_IDLE_SECONDS, SWEEP_INTERVAL_SECONDS
from dispatcher import ConnectionDispatcher
from logging_config import get_logger, setup_logging
from registry import SessionRegistry
from routers.health import health_router

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


async def websocket_endpoint(websocket: WebSocket):
    """Single endpoint for lens hosts and web trackers; the first message decides the role."""
    await websocket.accept()
    connection = Connection(websocket)
    client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
    logger.info(f"New client connected: {connection.id} from {client}")
    await websocket.app.state.dispatcher.run(connection)
    await connection.close()
    logger.debug(f"Connection {connection.id} handler finished")


def create_app(registry: SessionRegistry = None) -> FastAPI:
    """Build the relay app.

    Without ``registry`` every server run starts from a fresh, empty registry;
    nothing survives a restart.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = registry if registry is not None else SessionRegistry(max_idle_seconds=SESSION_MAX_IDLE_SECONDS)
        app.state.registry = state
        app.state.dispatcher = ConnectionDispatcher(state)
        sweeper = asyncio.create_task(state.run_expiry_sweeper(SWEEP_INTERVAL_SECONDS))
        logger.info("Relay state initialized")
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            closed = await state.close_all()
            logger.info(f"Relay shut down, closed {closed} sessions")

    app = FastAPI(title="LensRelay", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.add_api_websocket_route("/", websocket_endpoint)
    app.add_api_websocket_route("/ws", websocket_endpoint)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
