"""
Client for the remote exam-assistant function.
"""
from __future__ import annotations

from typing import Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import AI_API_KEY, AI_ENDPOINT_URL, AI_TIMEOUT_S
from .observability import get_logger
from .request_composer import RequestPayload

logger = get_logger(__name__)


class AIInvocationError(RuntimeError):
    """Network failure, timeout, non-2xx status or malformed body from the AI function."""


class AIResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    answer: str
    question_not_found: bool = Field(default=False, alias="questionNotFound")
    is_follow_up: bool = Field(default=False, alias="isFollowUp")


class AIClient(Protocol):
    async def invoke(self, payload: RequestPayload) -> AIResponse:
        ...


class HttpAIClient:
    """POSTs the payload as JSON with a bearer credential."""

    def __init__(
        self,
        endpoint_url: str = AI_ENDPOINT_URL,
        api_key: str = AI_API_KEY,
        *,
        timeout_s: float = AI_TIMEOUT_S,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.endpoint_url = endpoint_url
        self.timeout_s = float(timeout_s)
        self._headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        self._client = http_client or httpx.AsyncClient(timeout=self.timeout_s)
        self._owns_client = http_client is None

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def invoke(self, payload: RequestPayload) -> AIResponse:
        body = payload.to_wire()
        try:
            response = await self._client.post(
                self.endpoint_url,
                json=body,
                headers=self._headers,
                timeout=self.timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise AIInvocationError(f"AI request timed out after {self.timeout_s:.0f}s") from exc
        except httpx.HTTPError as exc:
            raise AIInvocationError(f"AI request failed: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "ai_http_error",
                status=response.status_code,
                body=response.text[:500],
            )
            raise AIInvocationError(f"Failed to get response from AI (HTTP {response.status_code})")

        try:
            return AIResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise AIInvocationError(f"Malformed AI response: {exc}") from exc
