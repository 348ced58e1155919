from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder
from langchain_google_genai import ChatGoogleGenerativeAI

from agent.core.memory import ContextManager, PendingTurn, TurnOutcome, TurnStatus
from agent.core.messages import InboundMessage
from agent.core.prompt import build_system_prompt
from agent.core.store import ConversationStore, StoreRegistry, load_history
from config.settings import Settings, get_settings


logger = logging.getLogger(__name__)


def build_chat_model(settings: Optional[Settings] = None) -> BaseChatModel:
    settings = settings or get_settings()
    if not settings.google_api_key:
        raise RuntimeError(
            "GOOGLE_API_KEY not set. Please configure it in environment or .env"
        )

    return ChatGoogleGenerativeAI(
        model=settings.gemini_model,
        google_api_key=settings.google_api_key,
        temperature=settings.temperature,
        top_p=settings.top_p,
    )


def build_prompt() -> ChatPromptTemplate:
    return ChatPromptTemplate.from_messages(
        [
            ("system", "{system_prompt}"),
            MessagesPlaceholder("chat_history"),
        ]
    )


def to_lc_messages(history: Sequence[Dict[str, str]]) -> List[BaseMessage]:
    messages: List[BaseMessage] = []
    for item in history or []:
        role = (item.get("role") or "").lower()
        content = item.get("content") or ""
        if not content:
            continue
        if role in ("user", "human"):
            messages.append(HumanMessage(content=content))
        elif role in ("assistant", "ai"):
            messages.append(AIMessage(content=content))
        elif role == "system":
            messages.append(SystemMessage(content=content))
        else:
            messages.append(HumanMessage(content=content))
    return messages


def _chunk_text(chunk: Any) -> str:
    content = getattr(chunk, "content", chunk)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        pieces = []
        for piece in content:
            if isinstance(piece, str):
                pieces.append(piece)
            elif isinstance(piece, dict) and piece.get("type") == "text":
                pieces.append(piece.get("text") or "")
        return "".join(pieces)
    return ""


class StreamingTurn:
    """Streams the model reply, then commits the turn to the session store."""

    def __init__(
        self,
        chat_model: BaseChatModel,
        store: ConversationStore,
        history_key: str,
        pending: PendingTurn,
    ) -> None:
        self._chat_model = chat_model
        self._store = store
        self._history_key = history_key
        self.pending = pending
        self.system_prompt = build_system_prompt(pending.history_omitted)
        self.outcome: Optional[TurnOutcome] = None

    @property
    def context_messages(self) -> List[Dict[str, str]]:
        return self.pending.context_messages

    async def stream(self) -> AsyncIterator[str]:
        chain = build_prompt() | self._chat_model
        chunks: List[str] = []
        async for chunk in chain.astream(
            {
                "system_prompt": self.system_prompt,
                "chat_history": to_lc_messages(self.pending.context_messages),
            }
        ):
            text = _chunk_text(chunk)
            if text:
                chunks.append(text)
                yield text

        self.outcome = self.pending.complete("".join(chunks))
        if self.outcome.updated_log is not None:
            await self._store.put(self._history_key, self.outcome.updated_log)

    async def start(self) -> AsyncIterator[str]:
        """Wait for the first chunk, then hand back an iterator over the whole reply.

        Errors raised before any output (credentials, network, model) surface here
        instead of inside an already started response.
        """
        chunks = self.stream()
        try:
            first = await chunks.__anext__()
        except StopAsyncIteration:
            first = None

        async def replay() -> AsyncIterator[str]:
            if first is None:
                return
            yield first
            async for text in chunks:
                yield text

        return replay()


class RefereeAgent:
    def __init__(
        self,
        chat_model: Optional[BaseChatModel],
        stores: StoreRegistry,
        manager: ContextManager,
        history_key: str = "conversation_history",
        settings: Optional[Settings] = None,
    ) -> None:
        self._chat_model = chat_model
        self._settings = settings
        self.stores = stores
        self.manager = manager
        self.history_key = history_key

    @property
    def chat_model(self) -> BaseChatModel:
        if self._chat_model is None:
            self._chat_model = build_chat_model(self._settings)
        return self._chat_model

    @classmethod
    def from_settings(
        cls, settings: Settings, stores: Optional[StoreRegistry] = None
    ) -> "RefereeAgent":
        return cls(
            chat_model=None,
            stores=stores or StoreRegistry.from_settings(settings),
            manager=ContextManager.from_settings(settings),
            history_key=settings.history_key,
            settings=settings,
        )

    async def start_turn(
        self, session_id: str, messages: Sequence[InboundMessage]
    ) -> Union[TurnOutcome, StreamingTurn]:
        store = self.stores.for_session(session_id)
        log = await load_history(store, self.history_key)
        result = self.manager.handle_turn(log, messages)

        if isinstance(result, PendingTurn):
            return StreamingTurn(self.chat_model, store, self.history_key, result)

        if result.status is TurnStatus.CLEARED:
            await store.delete(self.history_key)
        logger.info("Session %s: turn finished without model call (%s)", session_id, result.status.value)
        return result

