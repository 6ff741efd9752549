"""HTTP and WebSocket boundary.

``create_app`` wires a :class:`ChatService` into a FastAPI application: the
login/registration flow, history and ranking queries, and the ``/ws`` chat
endpoint. Both boundaries resolve the same session token.
"""

from __future__ import annotations

import math
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .commands import RANKING_SIZE
from .constants import SESSION_COOKIE
from .errors import (
    AuthError,
    ChatError,
    DuplicateUserError,
    PersistenceError,
    RateLimitError,
    ValidationError,
)
from .models import UserIdentity
from .schemas import LoginRequest, PostMessageRequest, RankingUpdate, RegisterRequest
from .service import ChatService
from .store import call_store
from .util import normalize_text

_STATUS_BY_ERROR: tuple[tuple[type[ChatError], int], ...] = (
    (AuthError, 401),
    (ValidationError, 400),
    (DuplicateUserError, 400),
    (RateLimitError, 429),
    (PersistenceError, 503),
)


def _status_for(exc: ChatError) -> int:
    if exc.code == "forbidden":
        return 403
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 400


async def _chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitError):
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after_ms / 1000)))
    return JSONResponse(
        status_code=_status_for(exc),
        content={"success": False, "error": exc.message, "code": exc.code},
        headers=headers,
    )


def get_service(request: Request) -> ChatService:
    return request.app.state.service


async def current_identity(request: Request, service: ChatService = Depends(get_service)) -> UserIdentity:
    return await service.binder.refresh(service.token_for(request))


def admin_identity(identity: UserIdentity = Depends(current_identity)) -> UserIdentity:
    if not identity.is_admin:
        raise AuthError("not authorized", code="forbidden")
    return identity


def _admit_auth_attempt(service: ChatService, request: Request) -> None:
    admission = service.auth_gate.admit(service.source_for(request))
    if not admission.allowed:
        service.stats_manager.inc("rate_limited")
        raise RateLimitError("too many attempts, try again later", retry_after_ms=admission.retry_after_ms)


def create_app(service: ChatService) -> FastAPI:
    cfg = service.config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(title=cfg.server_name, version=__version__, lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatError, _chat_error_handler)

    @app.post("/register", status_code=201)
    async def register(body: RegisterRequest, request: Request, svc: ChatService = Depends(get_service)):
        _admit_auth_attempt(svc, request)
        user = await svc.accounts.register(body.username, body.password)
        return {"success": True, "username": user.username}

    @app.post("/login")
    async def login(
        body: LoginRequest,
        request: Request,
        response: Response,
        svc: ChatService = Depends(get_service),
    ):
        _admit_auth_attempt(svc, request)
        if svc.moderation.is_banned(body.username):
            raise AuthError("you are banned from this server", code="banned")
        session = await svc.binder.authenticate(body.username, body.password)
        response.set_cookie(
            key=SESSION_COOKIE,
            value=session.token,
            httponly=True,
            secure=cfg.session_cookie_secure,
            samesite="lax",
            max_age=int(cfg.session_ttl_s),
        )
        return {
            "success": True,
            "token": session.token,
            "username": session.username,
            "role": session.role,
        }

    @app.post("/logout")
    async def logout(request: Request, response: Response, svc: ChatService = Depends(get_service)):
        svc.binder.destroy(svc.token_for(request))
        response.delete_cookie(SESSION_COOKIE)
        return {"success": True}

    @app.get("/me")
    async def me(identity: UserIdentity = Depends(current_identity)):
        return {"username": identity.username, "role": identity.role}

    @app.get("/messages")
    async def messages(
        room: str | None = Query(default=None),
        limit: int | None = Query(default=None),
        identity: UserIdentity = Depends(current_identity),
        svc: ChatService = Depends(get_service),
    ):
        try:
            r = svc.registry.normalize_room(room) if room else svc.registry.default_room
        except ValueError as e:
            raise ValidationError(f"invalid room: {e}", code="invalid_room") from e
        n = int(cfg.http_history_limit) if limit is None else max(1, min(int(limit), int(cfg.http_history_limit)))
        history = await svc.message_log.history(r, n)
        return [m.to_dict() for m in history]

    @app.post("/messages", status_code=201)
    async def post_message(
        body: PostMessageRequest,
        identity: UserIdentity = Depends(current_identity),
        svc: ChatService = Depends(get_service),
    ):
        admission = svc.message_gate.admit(identity.user_id)
        if not admission.allowed:
            svc.stats_manager.inc("rate_limited")
            raise RateLimitError("too many messages", retry_after_ms=admission.retry_after_ms)
        try:
            text = normalize_text(body.text, max_chars=cfg.max_message_chars)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if svc.moderation.is_muted(identity.username):
            raise ChatError("you are muted", code="muted")
        try:
            room = svc.registry.normalize_room(body.room) if body.room else svc.registry.default_room
        except ValueError as e:
            raise ValidationError(f"invalid room: {e}", code="invalid_room") from e

        message, delivered, durable = svc.router.publish(identity.username, room, text)
        return {"success": True, "message": message.to_dict(), "delivered": delivered, "durable": durable}

    @app.get("/rooms")
    async def rooms(svc: ChatService = Depends(get_service)):
        return [{"name": r.name, "members": r.member_count} for r in svc.registry.list_rooms()]

    @app.get("/ranking")
    async def ranking(svc: ChatService = Depends(get_service)):
        rows = await call_store(svc.store.top_ranking, RANKING_SIZE, timeout_s=cfg.store_timeout_s)
        return [{"nick": nick, "points": points} for nick, points in rows]

    @app.post("/ranking")
    async def update_ranking(
        body: RankingUpdate,
        identity: UserIdentity = Depends(admin_identity),
        svc: ChatService = Depends(get_service),
    ):
        await call_store(svc.store.upsert_ranking_score, body.nick, body.points, timeout_s=cfg.store_timeout_s)
        return {"success": True}

    @app.get("/health")
    async def health(svc: ChatService = Depends(get_service)):
        return svc.health()

    @app.websocket("/ws")
    async def chat_socket(websocket: WebSocket):
        await service.handle_websocket(websocket)

    return app
