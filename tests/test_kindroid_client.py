from __future__ import annotations

import asyncio
import hashlib
import json
import sys
from pathlib import Path
from typing import Any, Dict

import aiohttp
import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from multi_persona_bot.engagement.models import ConversationLine  # noqa: E402
from multi_persona_bot.services.kindroid_client import KindroidClient  # noqa: E402


CONVERSATION = [
    ConversationLine(username="bob", text="hi", timestamp="2024-01-01T00:00:00Z"),
    ConversationLine(username="alice", text="hello there"),
]


def _client_with_response(status: int, body: str) -> tuple[KindroidClient, list[Dict[str, Any]]]:
    client = KindroidClient("https://kindroid.example/infer", "kn_key")
    captured: list[Dict[str, Any]] = []

    async def _fake_request(payload: Dict[str, Any], headers: Dict[str, str]) -> tuple[int, str]:
        captured.append({"payload": payload, "headers": headers})
        return status, body

    client._request = _fake_request  # type: ignore[method-assign]
    return client, captured


def test_infer_sends_persona_payload_and_requester_hash() -> None:
    client, captured = _client_with_response(200, json.dumps({"success": True, "reply": "hey!"}))

    result = asyncio.run(client.infer("share-1", CONVERSATION, True))

    assert result.kind == "success"
    assert result.text == "hey!"
    request = captured[0]
    assert request["payload"] == {
        "share_code": "share-1",
        "enable_filter": True,
        "conversation": [
            {"username": "bob", "text": "hi", "timestamp": "2024-01-01T00:00:00Z"},
            {"username": "alice", "text": "hello there"},
        ],
    }
    assert request["headers"]["Authorization"] == "Bearer kn_key"
    assert request["headers"]["X-Kindroid-Requester"] == hashlib.sha256(b"alice").hexdigest()[:32]


def test_plain_text_reply_is_accepted() -> None:
    client, _ = _client_with_response(200, "  just text  ")
    assert asyncio.run(client.infer("share-1", CONVERSATION, False)).text == "just text"


def test_rate_limit_is_reported_not_raised() -> None:
    client, _ = _client_with_response(429, "slow down")
    assert asyncio.run(client.infer("share-1", CONVERSATION, False)).is_rate_limited


def test_http_error_raises_with_status() -> None:
    client, _ = _client_with_response(500, "boom")
    with pytest.raises(RuntimeError, match="500"):
        asyncio.run(client.infer("share-1", CONVERSATION, False))


def test_unsuccessful_payload_raises_error_text() -> None:
    client, _ = _client_with_response(200, json.dumps({"success": False, "error": "bad share code"}))
    with pytest.raises(RuntimeError, match="bad share code"):
        asyncio.run(client.infer("share-1", CONVERSATION, False))


def test_empty_conversation_rejected_before_request() -> None:
    client, captured = _client_with_response(200, "unused")
    with pytest.raises(RuntimeError, match="empty"):
        asyncio.run(client.infer("share-1", [], False))
    assert captured == []


def test_transport_errors_become_runtime_errors() -> None:
    client = KindroidClient("https://kindroid.example/infer", "kn_key")

    async def _broken(payload: Dict[str, Any], headers: Dict[str, str]) -> tuple[int, str]:
        raise aiohttp.ClientConnectionError("refused")

    client._request = _broken  # type: ignore[method-assign]
    with pytest.raises(RuntimeError, match="refused"):
        asyncio.run(client.infer("share-1", CONVERSATION, False))
