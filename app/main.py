from __future__ import annotations

from functools import lru_cache
from typing import Any, AsyncIterator, Dict, List

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
import logging
from pydantic import BaseModel, Field

from agent.agent import RefereeAgent, StreamingTurn
from agent.core.messages import InboundMessage
from agent.core.store import InvalidSessionId, StoreRegistry, clear_history, load_history
from config.settings import get_settings


settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="[%(asctime)s] %(levelname)s - %(message)s",
)
logger = logging.getLogger("referee")

app = FastAPI(title="Football Referee Assistant", version="1.0.0")

# CORS: allow local frontend during development
if settings.is_development:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


class ChatRequest(BaseModel):
    messages: List[InboundMessage] = Field(
        default_factory=list,
        description="Messages of the current request; only the latest one with text is processed",
    )


@lru_cache(maxsize=1)
def get_store_registry() -> StoreRegistry:
    return StoreRegistry.from_settings(get_settings())


def get_agent(stores: StoreRegistry = Depends(get_store_registry)) -> RefereeAgent:
    # the chat model is built on the first turn that needs it
    return RefereeAgent.from_settings(get_settings(), stores=stores)


async def _logged_stream(chunks: AsyncIterator[str], session_id: str) -> AsyncIterator[str]:
    try:
        async for text in chunks:
            yield text
    except Exception as e:
        logger.exception("Streaming reply failed for session %s: %s", session_id, e)
        raise


@app.post("/agents/chat/{session_id}")
async def chat(session_id: str, req: ChatRequest, agent: RefereeAgent = Depends(get_agent)):
    try:
        logger.info(
            "Incoming chat: session_id=%s messages=%s", session_id, len(req.messages)
        )
        result = await agent.start_turn(session_id, req.messages)
        if isinstance(result, StreamingTurn):
            chunks = await result.start()
    except InvalidSessionId as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Chat processing failed: %s", e)
        raise HTTPException(status_code=500, detail=str(e))

    if isinstance(result, StreamingTurn):
        return StreamingResponse(
            _logged_stream(chunks, session_id), media_type="text/plain; charset=utf-8"
        )
    return result.to_dict()


@app.get("/agents/chat/{session_id}/history")
async def history(
    session_id: str, stores: StoreRegistry = Depends(get_store_registry)
) -> Dict[str, Any]:
    try:
        store = stores.for_session(session_id)
    except InvalidSessionId as e:
        raise HTTPException(status_code=400, detail=str(e))
    messages = await load_history(store, get_settings().history_key)
    return {"session_id": session_id, "messages": [m.to_dict() for m in messages]}


@app.delete("/agents/chat/{session_id}/history")
async def clear(
    session_id: str, stores: StoreRegistry = Depends(get_store_registry)
) -> Dict[str, Any]:
    try:
        store = stores.for_session(session_id)
    except InvalidSessionId as e:
        raise HTTPException(status_code=400, detail=str(e))
    deleted = await clear_history(store, get_settings().history_key)
    logger.info("Session %s cleared: %d messages", session_id, deleted)
    return {"status": "cleared", "deleted": deleted}


@app.get("/health")
def health():
    return {"status": "ok"}
