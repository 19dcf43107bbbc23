from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, File, Request, UploadFile, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from . import storage
from .badges import BadgeStore, profile_stats, quiz_history
from .db import InMemoryDatabase, Settings, get_settings
from .errors import QuizRoomError
from .events import EventStore
from .gateway import EventGateway
from .ledger import HttpLedgerService, LedgerService, OfflineLedgerService
from .logging_config import configure_logging
from .registry import RoomRegistry
from .rewards import RewardDispatcher
from .schemas import CreateRoomIn, CreateRoomOut, HostCommandIn, SealBadgeIn
from .utils import now_ts


def create_app(settings: Optional[Settings] = None, ledger: Optional[LedgerService] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = configure_logging(settings.LOG_LEVEL)
        database = InMemoryDatabase()
        http_client: Optional[httpx.AsyncClient] = None

        ledger_service = ledger
        if ledger_service is None and settings.LEDGER_URL:
            http_client = httpx.AsyncClient(timeout=settings.LEDGER_TIMEOUT_SEC)
            ledger_service = HttpLedgerService(http_client, settings.LEDGER_URL, settings.LEDGER_API_KEY)
        if ledger_service is None:
            logger.warning("LEDGER_URL is not set; rewards and badges are recorded offline")
            ledger_service = OfflineLedgerService()

        badges = BadgeStore(database)
        gateway = EventGateway(EventStore(database))
        dispatcher = RewardDispatcher(
            ledger_service,
            badges,
            timeout=settings.LEDGER_TIMEOUT_SEC,
            expert_percent=settings.EXPERT_SCORE_PERCENT,
        )
        registry = RoomRegistry(gateway, dispatcher, database, tick_interval=settings.TIMER_TICK_SECONDS)

        app.state.database = database
        app.state.badges = badges
        app.state.gateway = gateway
        app.state.registry = registry
        logger.info("Quiz room service ready")
        try:
            yield
        finally:
            await registry.shutdown()
            if http_client is not None:
                await http_client.aclose()

    app = FastAPI(title="Quiz Room API", lifespan=lifespan)

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=settings.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(QuizRoomError)
    async def quiz_room_error(request: Request, exc: QuizRoomError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

    def get_registry(request: Request) -> RoomRegistry:
        return request.app.state.registry

    def get_badges(request: Request) -> BadgeStore:
        return request.app.state.badges

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": now_ts()}

    @app.post("/api/rooms", response_model=CreateRoomOut, response_model_by_alias=True)
    async def create_room(payload: CreateRoomIn, registry: RoomRegistry = Depends(get_registry)):
        session = await registry.create(payload.quiz_data, payload.host_address)
        return CreateRoomOut(room_id=session.id, room_code=session.room_code)

    @app.get("/api/rooms")
    async def list_rooms(registry: RoomRegistry = Depends(get_registry)):
        return {"rooms": [room.model_dump(by_alias=True) for room in registry.list()]}

    @app.get("/api/rooms/{room_code}")
    async def get_room(room_code: str, registry: RoomRegistry = Depends(get_registry)):
        return {"room": registry.get(room_code).detail().model_dump(by_alias=True)}

    @app.get("/api/rooms/{room_code}/leaderboard")
    async def get_leaderboard(room_code: str, registry: RoomRegistry = Depends(get_registry)):
        leaderboard = registry.get(room_code).leaderboard()
        return {"leaderboard": [entry.model_dump(by_alias=True) for entry in leaderboard]}

    @app.get("/api/rooms/{room_code}/events")
    async def list_events(
        room_code: str,
        request: Request,
        after: int | None = None,
        limit: int = 200,
        registry: RoomRegistry = Depends(get_registry),
    ):
        session = registry.get(room_code)
        events = await request.app.state.gateway.event_store.list(session.id, after=after, limit=limit)
        latest_seq = events[-1]["seq"] if events else after
        return {"events": events, "latest_seq": latest_seq}

    @app.post("/api/rooms/{room_code}/start")
    async def start(room_code: str, payload: HostCommandIn, registry: RoomRegistry = Depends(get_registry)):
        session = registry.get(room_code)
        await session.start(payload.host_address)
        return {"ok": True, "roomCode": session.room_code, "gameState": session.game_state}

    @app.post("/api/rooms/{room_code}/stop")
    async def stop(room_code: str, payload: HostCommandIn, registry: RoomRegistry = Depends(get_registry)):
        session = registry.get(room_code)
        await session.stop(payload.host_address)
        return {"ok": True, "roomCode": session.room_code, "gameState": session.game_state}

    @app.post("/api/rooms/{room_code}/next")
    async def next_question(room_code: str, payload: HostCommandIn, registry: RoomRegistry = Depends(get_registry)):
        session = registry.get(room_code)
        await session.advance(payload.host_address)
        return {
            "ok": True,
            "roomCode": session.room_code,
            "gameState": session.game_state,
            "currentQuestionIndex": session.current_question_index,
        }

    @app.delete("/api/rooms/{room_code}")
    async def delete_room(room_code: str, payload: HostCommandIn, registry: RoomRegistry = Depends(get_registry)):
        await registry.delete(room_code, payload.host_address)
        return {"ok": True}

    @app.post("/api/media")
    async def upload_media(file: UploadFile = File(...)):
        data = await file.read()
        content_id = await storage.upload_media(file.filename or "upload", data, file.content_type)
        return {"contentId": content_id}

    @app.get("/api/media/{content_id}")
    async def get_media(content_id: str):
        data, content_type = await storage.fetch_media(content_id)
        return Response(content=data, media_type=content_type)

    @app.get("/api/badges/{address}")
    async def list_badges(address: str, badges: BadgeStore = Depends(get_badges)):
        records = await badges.list_for(address)
        return {"badges": [b.model_dump(by_alias=True) for b in records], "total": len(records)}

    @app.post("/api/badges/{badge_id}/seal")
    async def seal_badge(badge_id: str, payload: SealBadgeIn, badges: BadgeStore = Depends(get_badges)):
        badge = await badges.seal(badge_id, payload.sealer_address)
        return {"badge": badge.model_dump(by_alias=True)}

    @app.get("/api/profile/{address}/stats")
    async def get_profile_stats(
        address: str,
        badges: BadgeStore = Depends(get_badges),
        registry: RoomRegistry = Depends(get_registry),
    ):
        records = await badges.list_for(address)
        return profile_stats(address, records, registry.hosted_by(address)).model_dump(by_alias=True)

    @app.get("/api/profile/{address}/history")
    async def get_profile_history(address: str, badges: BadgeStore = Depends(get_badges)):
        records = await badges.list_for(address)
        return {"history": [entry.model_dump(by_alias=True) for entry in quiz_history(records)]}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.app.state.gateway.serve(websocket, websocket.app.state.registry)

    return app


app = create_app()
