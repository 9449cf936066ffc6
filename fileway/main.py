"""
Fileway: FastAPI application entry point.

Starts the Discovery Service and Transfer Service for the signed-in user,
serves the REST API and the WebSocket event stream for the UI.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from fileway.api.routes import init_routes, router
from fileway.config import API_HOST, API_PORT
from fileway.host import ServiceHost

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(host: ServiceHost | None = None) -> FastAPI:
    """Build the API around a service host."""
    host = host or ServiceHost()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info("Starting Fileway services...")

        try:
            if host.store.is_logged_in():
                await host.start()
            else:
                logger.info("No signed-in user yet; services start on /api/session/start")

            yield

        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            raise
        finally:
            logger.info("Shutting down Fileway services...")
            await host.stop()

    app = FastAPI(
        title="Fileway",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173", "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    init_routes(host)
    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await host.ws_manager.connect(websocket)
        try:
            while True:
                # Keep the connection alive; clients only listen
                await websocket.receive_text()
        except WebSocketDisconnect:
            await host.ws_manager.disconnect(websocket)
        except Exception:
            await host.ws_manager.disconnect(websocket)

    app.state.host = host
    return app


def main() -> None:
    import uvicorn

    uvicorn.run(
        create_app(),
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    main()
