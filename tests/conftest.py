import os
from datetime import datetime, timezone

import pytest

# --- Environment Setup ---
os.environ["APP_ENV"] = "test"
os.environ["GOOGLE_API_KEY"] = "test-key"
os.environ["STORE_BACKEND"] = "memory"

from agent.core.messages import InboundMessage, MessageMetadata, StoredMessage  # noqa: E402
from config.settings import get_settings  # noqa: E402


FIXED_NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def inbound(role, *texts, extra_parts=None):
    parts = [{"type": "text", "text": t} for t in texts]
    parts.extend(extra_parts or [])
    return InboundMessage(role=role, parts=parts)


def stored(role, content, created_at="2026-04-30T09:00:00.000Z"):
    return StoredMessage(role=role, content=content, metadata=MessageMetadata(created_at=created_at))


def make_log(count):
    roles = ("user", "assistant")
    return [stored(roles[i % 2], f"msg {i}") for i in range(count)]


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW
