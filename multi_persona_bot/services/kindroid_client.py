from __future__ import annotations

import asyncio
import hashlib
import json
from typing import Any, Dict, List

import aiohttp

from ..engagement.models import ConversationLine, InferenceResult


class KindroidClient:
    """Persona inference over the Kindroid Discord endpoint."""

    def __init__(
        self,
        infer_url: str,
        api_key: str,
        timeout_seconds: int = 60,
    ) -> None:
        self.infer_url = infer_url.strip()
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    @staticmethod
    def requester_hash(username: str) -> str:
        return hashlib.sha256(username.encode("utf-8")).hexdigest()[:32]

    def _headers(self, conversation: List[ConversationLine]) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "X-Kindroid-Requester": self.requester_hash(conversation[-1].username),
            "Content-Type": "application/json",
        }

    @staticmethod
    def _payload(persona_code: str, conversation: List[ConversationLine], enable_filter: bool) -> Dict[str, Any]:
        return {
            "share_code": persona_code,
            "enable_filter": bool(enable_filter),
            "conversation": [line.as_payload() for line in conversation],
        }

    async def _request(self, payload: Dict[str, Any], headers: Dict[str, str]) -> tuple[int, str]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        async with self._session.post(self.infer_url, json=payload, headers=headers) as response:
            return response.status, await response.text()

    @staticmethod
    def _extract_reply(text: str) -> str:
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            reply = text.strip()
            if not reply:
                raise RuntimeError("Kindroid returned an empty response")
            return reply

        if not isinstance(data, dict):
            raise RuntimeError("Kindroid returned an unexpected payload")
        if data.get("success") is False:
            error = str(data.get("error") or "").strip()
            raise RuntimeError(error or "Kindroid request failed without specific error")
        reply = str(data.get("reply") or "").strip()
        if not reply:
            raise RuntimeError(f"Kindroid empty reply (stop_reason={data.get('stop_reason')})")
        return reply

    async def infer(
        self,
        persona_code: str,
        conversation: List[ConversationLine],
        enable_filter: bool,
    ) -> InferenceResult:
        if not conversation:
            raise RuntimeError("Conversation array cannot be empty")

        try:
            status, text = await self._request(
                self._payload(persona_code, conversation, enable_filter),
                self._headers(conversation),
            )
        except asyncio.CancelledError:
            raise
        except aiohttp.ClientError as exc:
            raise RuntimeError(f"Kindroid request failed: {exc}") from exc

        if status == 429:
            return InferenceResult.rate_limited()
        if status != 200:
            raise RuntimeError(f"Kindroid error {status}: {text}")
        return InferenceResult.success(self._extract_reply(text))
