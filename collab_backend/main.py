import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from typing import List, Optional

from fastapi import Body, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from .config import Settings, get_settings
from .database import Store, build_store
from .errors import PersistenceError, RecordNotFound
from .models.events import frame
from .models.records import CreateRecord, DeleteResult, Document, RecordKind, Whiteboard
from .websocket.handler import SessionHandler
from .websocket.manager import ClientSession, RoomRegistry

logger = logging.getLogger("uvicorn.error")


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_handler(request: Request) -> SessionHandler:
    return request.app.state.handler


def create_app(settings: Settings = None, store: Store = None) -> FastAPI:
    settings = settings or get_settings()
    store = store or build_store(settings)
    registry = RoomRegistry()
    handler = SessionHandler(registry, store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"CORS configured for: {settings.frontend_url}")
        yield
        # Writes already issued are allowed to finish before the store goes away.
        await handler.drain()
        await store.close()

    app = FastAPI(title="Collaboration API", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.registry = registry
    app.state.handler = handler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(RecordNotFound)
    async def not_found_handler(request: Request, exc: RecordNotFound):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.error(f"Store error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Rejected body on {request.method} {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=422, content={"error": "Invalid request body"})

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    register_routes(app)
    return app


def register_routes(app: FastAPI):
    @app.get("/health")
    async def health():
        return {"status": "OK"}

    @app.get("/api/documents", response_model=List[Document])
    async def list_documents(store: Store = Depends(get_store)):
        return await store.list(RecordKind.DOCUMENTS)

    @app.post("/api/documents", response_model=Document)
    async def create_document(
        body: Optional[CreateRecord] = Body(None),
        store: Store = Depends(get_store),
    ):
        """Create an empty document"""
        return await store.create(RecordKind.DOCUMENTS, body.title if body else None)

    @app.get("/api/documents/{document_id}", response_model=Document)
    async def get_document(document_id: str, store: Store = Depends(get_store)):
        return await store.get(RecordKind.DOCUMENTS, document_id)

    @app.delete("/api/documents/{document_id}", response_model=DeleteResult)
    async def delete_document(
        document_id: str,
        store: Store = Depends(get_store),
        handler: SessionHandler = Depends(get_handler),
    ):
        """Delete a document and tell anyone still editing it"""
        await store.delete(RecordKind.DOCUMENTS, document_id)
        handler.notify_deleted(RecordKind.DOCUMENTS, document_id)
        return {"message": "Document deleted successfully"}

    @app.get("/api/whiteboards", response_model=List[Whiteboard])
    async def list_whiteboards(store: Store = Depends(get_store)):
        return await store.list(RecordKind.WHITEBOARDS)

    @app.post("/api/whiteboards", response_model=Whiteboard)
    async def create_whiteboard(
        body: Optional[CreateRecord] = Body(None),
        store: Store = Depends(get_store),
    ):
        """Create an empty whiteboard"""
        return await store.create(RecordKind.WHITEBOARDS, body.title if body else None)

    @app.get("/api/whiteboards/{whiteboard_id}", response_model=Whiteboard)
    async def get_whiteboard(whiteboard_id: str, store: Store = Depends(get_store)):
        return await store.get(RecordKind.WHITEBOARDS, whiteboard_id)

    @app.delete("/api/whiteboards/{whiteboard_id}", response_model=DeleteResult)
    async def delete_whiteboard(
        whiteboard_id: str,
        store: Store = Depends(get_store),
        handler: SessionHandler = Depends(get_handler),
    ):
        """Delete a whiteboard and tell anyone still drawing on it"""
        await store.delete(RecordKind.WHITEBOARDS, whiteboard_id)
        handler.notify_deleted(RecordKind.WHITEBOARDS, whiteboard_id)
        return {"message": "Whiteboard deleted successfully"}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket endpoint for real-time collaboration"""
        handler: SessionHandler = websocket.app.state.handler
        keepalive = websocket.app.state.settings.keepalive_seconds

        await websocket.accept()
        session = handler.registry.connect(ClientSession(websocket))
        writer = asyncio.create_task(session.pump())
        session.send(frame("connect", {"id": session.id}))
        message_count = 0

        try:
            while True:
                try:
                    data = await asyncio.wait_for(websocket.receive_text(), timeout=keepalive)
                except asyncio.TimeoutError:
                    logger.debug(f"[Session {session.id}] Idle for {keepalive}s, sending ping")
                    session.send(frame("ping"))
                    continue

                message_count += 1
                try:
                    message = json.loads(data)
                except json.JSONDecodeError as e:
                    logger.error(f"[Session {session.id}] JSON decode error: {e}")
                    session.send(frame("error", {"message": "Invalid JSON"}))
                    continue

                if not isinstance(message, dict):
                    session.send(frame("error", {"message": "Expected a JSON object"}))
                    continue

                event = message.get("type")
                if event == "ping":
                    session.send(frame("pong"))
                    continue
                if event == "pong":
                    continue

                try:
                    await handler.handle(session, event, message.get("data"))
                except Exception as e:
                    logger.error(f"[Session {session.id}] Error handling '{event}': {e}", exc_info=True)
                    session.send(frame("error", {"message": "Internal server error"}))

        except WebSocketDisconnect:
            logger.info(f"[Session {session.id}] Client disconnected")
        except Exception as e:
            logger.error(f"[Session {session.id}] Fatal error: {e}", exc_info=True)
            try:
                await websocket.close(code=1011)
            except RuntimeError as close_error:
                logger.debug(f"[Session {session.id}] Socket already closed: {close_error}")
        finally:
            handler.disconnect(session)
            writer.cancel()
            with suppress(asyncio.CancelledError):
                await writer
            logger.info(f"[Session {session.id}] Connection closed after {message_count} messages")


app = create_app()


def run():
    import uvicorn

    settings = app.state.settings
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level)


if __name__ == "__main__":
    run()
