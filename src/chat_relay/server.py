"""FastAPI application relaying chat turns to a remote inference service."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Header, Query, Response, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .config import DEFAULT_SYSTEM_PROMPT, load_config
from .llm import InferenceError, create_from_config
from .memory import DiskSessionLog, SessionLog
from .models import ChatRequest
from .pipeline import Inference, Turn, TurnPipeline
from .realtime import RealtimeSession

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"

SSE_HEADERS = {
    "cache-control": "no-cache",
    "connection": "keep-alive",
}


# -----------------------------
# Utilities
# -----------------------------
def _get_system_prompt(cfg: Dict[str, Any]) -> str:
    sys_prompt = cfg.get("relay", {}).get("system_prompt") or DEFAULT_SYSTEM_PROMPT
    return str(sys_prompt).strip()


def _make_session_log(cfg: Dict[str, Any]) -> DiskSessionLog:
    mem_cfg = cfg.get("memory", {})
    return DiskSessionLog(mem_cfg.get("data_dir") or "data/sessions")


def _make_pipeline(cfg: Dict[str, Any], session_log: SessionLog, inference: Inference) -> TurnPipeline:
    relay_cfg = cfg.get("relay", {})
    turn_timeout = relay_cfg.get("turn_timeout")
    max_tokens = cfg.get("inference", {}).get("max_tokens")
    return TurnPipeline(
        session_log,
        inference,
        system_prompt=_get_system_prompt(cfg),
        max_tokens=int(max_tokens) if max_tokens else None,
        turn_timeout=float(turn_timeout) if turn_timeout else None,
    )


def _session_key(session_id: Optional[str], header: Optional[str]) -> str:
    return session_id or header or ANONYMOUS


async def _event_stream(turn: Turn) -> AsyncIterator[bytes]:
    try:
        async for chunk in turn.raw:
            yield chunk
    except InferenceError as e:
        # Headers are already sent; all we can do is end the body.
        logger.error("Inference stream for session %r ended early: %s", turn.session_key, e)
    except Exception:
        logger.exception("Unexpected error streaming reply for session %r", turn.session_key)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    inference: Optional[Inference] = None,
    session_log: Optional[SessionLog] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    # CORS
    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    # Services
    owns_inference = inference is None
    inference = inference or create_from_config(cfg)
    session_log = session_log or _make_session_log(cfg)
    pipeline = _make_pipeline(cfg, session_log, inference)
    shutdown_timeout = cfg.get("relay", {}).get("shutdown_timeout")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            # Let in-flight replies reach the log before shutting down, within a bound.
            await pipeline.drain(timeout=float(shutdown_timeout) if shutdown_timeout else None)
            if owns_inference:
                await inference.aclose()

    app = FastAPI(title="Chat Relay", version="0.1.0", lifespan=lifespan)
    app.state.pipeline = pipeline
    app.state.session_log = session_log
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "sessions_dir": getattr(session_log, "root", None) and str(session_log.root),
            "model": cfg.get("inference", {}).get("model"),
        }

    @app.get("/api/messages")
    async def get_messages(
        session_id: Optional[str] = Query(default=None, alias="sessionId"),
        x_session_id: Optional[str] = Header(default=None),
    ):
        key = _session_key(session_id, x_session_id)
        try:
            messages = await session_log.get_all(key)
        except Exception:
            logger.exception("Failed to fetch messages for session %r", key)
            return Response("Failed to fetch messages", status_code=500)
        return JSONResponse([m.model_dump() for m in messages])

    @app.delete("/api/messages", status_code=204)
    async def clear_messages(
        session_id: Optional[str] = Query(default=None, alias="sessionId"),
        x_session_id: Optional[str] = Header(default=None),
    ) -> Response:
        await session_log.clear(_session_key(session_id, x_session_id))
        return Response(status_code=204)

    @app.post("/api/chat")
    async def chat(req: ChatRequest, x_session_id: Optional[str] = Header(default=None)):
        key = _session_key(None, x_session_id)
        last_user = next((m for m in reversed(req.messages) if m.role == "user"), None)
        try:
            turn = await pipeline.run_turn(key, last_user.content if last_user else None)
        except Exception:
            logger.exception("Error processing chat request for session %r", key)
            return JSONResponse({"error": "Failed to process request"}, status_code=500)

        return StreamingResponse(
            _event_stream(turn),
            media_type="text/event-stream; charset=utf-8",
            headers=SSE_HEADERS,
        )

    @app.websocket("/api/realtime")
    async def realtime(websocket: WebSocket, session_id: Optional[str] = Query(default=None, alias="sessionId")):
        key = _session_key(session_id, websocket.headers.get("x-session-id"))
        await websocket.accept()
        await RealtimeSession(websocket, pipeline, key).run()

    return app
