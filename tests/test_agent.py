from unittest.mock import MagicMock

import pytest
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage

from agent.agent import (
    RefereeAgent,
    StreamingTurn,
    _chunk_text,
    build_chat_model,
    to_lc_messages,
)
from agent.core.memory import ContextManager, TurnOutcome, TurnStatus
from agent.core.prompt import OMITTED_NOTE, build_system_prompt
from agent.core.store import InvalidSessionId, StoreRegistry
from config.settings import Settings

from conftest import inbound, make_log, stored


KEY = "conversation_history"
REPLY = "Direct free kick and a yellow card for stopping a promising attack."


class BrokenChatModel(GenericFakeChatModel):
    def _generate(self, *args, **kwargs):
        raise RuntimeError("model unavailable")

    def _stream(self, *args, **kwargs):
        raise RuntimeError("model unavailable")

    async def _astream(self, *args, **kwargs):
        raise RuntimeError("model unavailable")
        yield


def fake_model(text=REPLY):
    return GenericFakeChatModel(messages=iter([AIMessage(content=text)]))


@pytest.fixture
def registry():
    return StoreRegistry()


def make_agent(registry, model, fixed_clock, **kwargs):
    manager = ContextManager(max_context=15, max_stored=100, clock=fixed_clock, **kwargs)
    return RefereeAgent(chat_model=model, stores=registry, manager=manager, history_key=KEY)


@pytest.mark.asyncio
async def test_turn_streams_reply_and_persists(registry, fixed_clock):
    agent = make_agent(registry, fake_model(), fixed_clock)

    turn = await agent.start_turn("match-1", [inbound("user", "Tactical foul on a breakaway?")])
    assert isinstance(turn, StreamingTurn)

    chunks = [chunk async for chunk in turn.stream()]
    assert len(chunks) > 1
    assert "".join(chunks) == REPLY

    saved = await registry.for_session("match-1").get(KEY)
    assert [(m.role, m.content) for m in saved] == [
        ("user", "Tactical foul on a breakaway?"),
        ("assistant", REPLY),
    ]
    assert turn.outcome.status is TurnStatus.OK


@pytest.mark.asyncio
async def test_turn_sends_window_and_system_prompt(registry, fixed_clock):
    await registry.for_session("match-1").put(KEY, make_log(40))
    agent = make_agent(registry, fake_model(), fixed_clock)

    turn = await agent.start_turn("match-1", [inbound("user", "And in the penalty area?")])
    assert len(turn.context_messages) == 16
    assert OMITTED_NOTE in turn.system_prompt

    [chunk async for chunk in turn.stream()]
    saved = await registry.for_session("match-1").get(KEY)
    assert len(saved) == 42


@pytest.mark.asyncio
async def test_duplicate_skips_model_and_store(registry, fixed_clock):
    log = [stored("user", "X"), stored("assistant", "Y")]
    await registry.for_session("s").put(KEY, log)
    model = MagicMock(spec=BaseChatModel)
    agent = make_agent(registry, model, fixed_clock)

    outcome = await agent.start_turn("s", [inbound("user", "X")])

    assert isinstance(outcome, TurnOutcome)
    assert outcome.status is TurnStatus.DUPLICATE
    assert model.mock_calls == []
    assert await registry.for_session("s").get(KEY) == log


@pytest.mark.asyncio
async def test_clear_command_deletes_log(registry, fixed_clock):
    await registry.for_session("s").put(KEY, make_log(5))
    model = MagicMock(spec=BaseChatModel)
    agent = make_agent(registry, model, fixed_clock)

    outcome = await agent.start_turn("s", [inbound("system", "(clear requested)")])

    assert outcome.status is TurnStatus.CLEARED
    assert outcome.deleted == 5
    assert await registry.for_session("s").get(KEY) is None
    assert model.mock_calls == []


@pytest.mark.asyncio
async def test_empty_batch_is_a_no_op(registry, fixed_clock):
    agent = make_agent(registry, MagicMock(spec=BaseChatModel), fixed_clock)
    outcome = await agent.start_turn("s", [inbound("user", extra_parts=[{"type": "file"}])])
    assert outcome.status is TurnStatus.EMPTY
    assert await registry.for_session("s").get(KEY) is None


@pytest.mark.asyncio
async def test_model_failure_propagates_without_write(registry, fixed_clock):
    log = make_log(2)
    await registry.for_session("s").put(KEY, log)
    agent = make_agent(registry, BrokenChatModel(messages=iter([])), fixed_clock)

    turn = await agent.start_turn("s", [inbound("user", "Is this offside?")])
    with pytest.raises(RuntimeError, match="model unavailable"):
        await turn.start()

    assert await registry.for_session("s").get(KEY) == log
    assert turn.outcome is None


@pytest.mark.asyncio
async def test_invalid_session_id(registry, fixed_clock):
    agent = make_agent(registry, fake_model(), fixed_clock)
    with pytest.raises(InvalidSessionId):
        await agent.start_turn("bad/id", [inbound("user", "hi")])


def test_to_lc_messages_maps_roles():
    messages = to_lc_messages(
        [
            {"role": "system", "content": "rules"},
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": "a"},
            {"role": "user", "content": ""},
        ]
    )
    assert [type(m) for m in messages] == [SystemMessage, HumanMessage, AIMessage]


def test_chunk_text_handles_content_blocks():
    assert _chunk_text(AIMessageChunk(content="plain")) == "plain"
    chunk = AIMessageChunk(content=[{"type": "text", "text": "Law "}, "12"])
    assert _chunk_text(chunk) == "Law 12"


def test_build_system_prompt():
    prompt = build_system_prompt()
    assert "referee" in prompt
    assert OMITTED_NOTE not in prompt
    assert OMITTED_NOTE in build_system_prompt(history_omitted=3)


def test_build_chat_model_requires_api_key(monkeypatch):
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="GOOGLE_API_KEY"):
        build_chat_model(Settings())


@pytest.mark.asyncio
async def test_start_replays_whole_reply(registry, fixed_clock):
    agent = make_agent(registry, fake_model(), fixed_clock)
    turn = await agent.start_turn("s", [inbound("user", "Who restarts after a drop ball?")])

    chunks = await turn.start()
    assert turn.outcome is None
    assert "".join([text async for text in chunks]) == REPLY
    assert turn.outcome.status is TurnStatus.OK
    assert len(await registry.for_session("s").get(KEY)) == 2


@pytest.mark.asyncio
async def test_assistant_reply_stored_as_streamed(registry, fixed_clock):
    reply = "Law 12.\n\n- Direct free kick\n"
    agent = make_agent(registry, fake_model(reply), fixed_clock)
    turn = await agent.start_turn("s", [inbound("user", "Sanction for tripping?")])

    streamed = "".join([text async for text in turn.stream()])
    saved = await registry.for_session("s").get(KEY)
    assert saved[-1].content == streamed == reply


@pytest.mark.asyncio
async def test_chat_model_is_built_only_when_needed(monkeypatch, registry):
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    await registry.for_session("s").put(KEY, make_log(3))
    agent = RefereeAgent.from_settings(Settings(), stores=registry)

    with pytest.raises(InvalidSessionId):
        await agent.start_turn("bad/id", [inbound("user", "hi")])

    outcome = await agent.start_turn("s", [inbound("system", "(clear requested)")])
    assert outcome.status is TurnStatus.CLEARED
    assert outcome.deleted == 3

    with pytest.raises(RuntimeError, match="GOOGLE_API_KEY"):
        await agent.start_turn("s", [inbound("user", "Now a real question")])
