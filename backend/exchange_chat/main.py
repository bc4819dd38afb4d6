"""Exchange Chat Backend Application.

This is the main entry point for the exchange chat service: real-time
messaging and typing presence between the two participants of a barter
exchange.

Modules:
    - chat: WebSocket gateway, room registry, typing presence, message store
    - exchanges: Participant lookups (exchange service boundary)
    - auth: Access token verification
    - client: Client session and optimistic timeline reconciliation
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from exchange_chat.chat.gateway import ChatGateway
from exchange_chat.chat.presence import PresenceBroadcaster
from exchange_chat.chat.registry import RoomRegistry
from exchange_chat.chat.router import router as chat_router
from exchange_chat.chat.store import MessageStore
from exchange_chat.config import AppConfig, get_config
from exchange_chat.errors import ChatError, chat_error_handler
from exchange_chat.exchanges import DuckDBExchangeDirectory, ExchangeDirectory

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


def build_gateway(config: AppConfig, exchanges: Optional[ExchangeDirectory] = None) -> ChatGateway:
    """Wire store, registry and presence into a gateway.

    Args:
        config: Application configuration.
        exchanges: Participant lookup; defaults to the DuckDB directory in
            the configured chat database.
    """
    if exchanges is None:
        exchanges = DuckDBExchangeDirectory(db_path=config.store.db_path)
    chat = config.chat
    store = MessageStore(
        exchanges,
        db_path=config.store.db_path,
        max_content_length=chat.max_content_length,
        max_images=chat.max_images,
    )
    registry = RoomRegistry(exchanges)
    presence = PresenceBroadcaster(
        registry,
        window=chat.typing_window_seconds,
        debounce=chat.typing_debounce_seconds,
    )
    return ChatGateway(
        store,
        registry,
        presence,
        exchanges,
        outbox_size=chat.outbox_size,
        sweep_interval=chat.typing_sweep_interval_seconds,
    )


def create_app(gateway: Optional[ChatGateway] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        gateway: Pre-built gateway (tests). When omitted it is built from the
            configuration at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        config = get_config()

        # Apply configured log level to root logger
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        owns_gateway = getattr(app.state, "gateway", None) is None
        if owns_gateway:
            app.state.gateway = build_gateway(config)
        app.state.gateway.start()
        logger.info(
            f"Exchange chat ready on http://{config.server.host}:{config.server.port}"
        )

        yield  # Application runs here

        await app.state.gateway.stop()
        if owns_gateway:
            app.state.gateway.store.close()
            if isinstance(app.state.gateway.exchanges, DuckDBExchangeDirectory):
                app.state.gateway.exchanges.close()
            app.state.gateway = None
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Exchange Chat API",
        description="Real-time chat between the two participants of an exchange",
        version="0.1.0",
        lifespan=lifespan,
    )
    if gateway is not None:
        app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_config().server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatError, chat_error_handler)
    app.include_router(chat_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()


def run() -> None:
    """Serve the app with uvicorn using the configured host and port."""
    config = get_config()
    uvicorn.run(
        "exchange_chat.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    run()
