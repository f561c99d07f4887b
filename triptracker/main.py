import logging
from typing import Optional
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from .api.endpoints import router as api_router
from .config import config
from .db import SessionLocal, init_db
from .services import Services

logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API around an explicit set of services (defaults from config)."""
    app = FastAPI(
        title="Trip Tracker",
        description="GPS trip recording, fuel cost statistics and backend sync",
        version="1.0.0",
        debug=config.debug
    )
    app.state.services = services or Services(SessionLocal)

    # Include API routes
    app.include_router(api_router, prefix="/api")

    @app.on_event("startup")
    async def startup():
        """Initialize database on startup and pick up an interrupted trip."""
        current = app.state.services
        init_db(current.session_factory)
        recovered = current.recorder.recover()
        if recovered is not None:
            logger.info("Resumed in-progress trip %s", recovered.id)

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.services.aclose()

    @app.get("/")
    async def root():
        return {"message": "Trip Tracker", "docs": "/docs"}

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "recording": app.state.services.recorder.state.value}

    @app.websocket("/ws/data")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket endpoint streaming recorder events."""
        manager = app.state.services.manager
        await manager.connect(websocket)
        try:
            await manager.send_personal_message(
                {"type": "snapshot", "payload": app.state.services.recorder.snapshot()}, websocket
            )
            while True:
                # Keep connection alive - wait for messages
                await websocket.receive_text()
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    return app


app = create_app()
