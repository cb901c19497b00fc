"""OpenAI-compatible REST client for embeddings and chat completions.

Used by the vector engine (embeddings) and the compliance assistant (chat
completions). Any provider exposing the OpenAI `/embeddings` and
`/chat/completions` endpoints works, selected by COMPLIANCEOS_AI_BASE_URL.

All failures (timeouts, transport errors, non-2xx responses, malformed
bodies) surface as ExternalServiceError so routes return a 502.
"""

from typing import Any

import httpx

from complianceos.common.errors import ExternalServiceError
from complianceos.common.observability import get_logger

logger = get_logger(__name__)

_SERVICE_NAME = "ai-provider"

COMPLIANCE_SYSTEM_PROMPT = """You are an AI assistant specialized in compliance management. You help users with:
- Evidence management and audit preparation
- Policy analysis and risk assessment
- Control framework guidance
- Compliance best practices

Use the provided context to give accurate, helpful responses. Always cite your sources when possible."""


class AIClient:
    """Async client for an OpenAI-compatible API.

    Args:
        base_url: API base URL, e.g. https://api.openai.com/v1.
        api_key: Bearer API key.
        embedding_model: Model used by embed().
        chat_model: Model used by complete().
        max_tokens: max_tokens sent with chat completions.
        temperature: Sampling temperature for chat completions.
        timeout_seconds: Per-request timeout.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        embedding_model: str = "text-embedding-ada-002",
        chat_model: str = "gpt-4",
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._embedding_model = embedding_model
        self._chat_model = chat_model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def embedding_model(self) -> str:
        return self._embedding_model

    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for `text`.

        Raises:
            ExternalServiceError: If the provider call fails or returns no vector.
        """
        body = await self._post("/embeddings", {"model": self._embedding_model, "input": text})
        try:
            return [float(value) for value in body["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ExternalServiceError(service=_SERVICE_NAME, message=f"Malformed embedding response: {exc}") from exc

    async def complete(self, messages: list[dict[str, str]]) -> str:
        """Run a chat completion with the compliance system prompt prepended.

        Args:
            messages: Conversation messages ({"role", "content"}), without a system message.

        Returns:
            The assistant message content.

        Raises:
            ExternalServiceError: If the provider call fails.
        """
        payload = {
            "model": self._chat_model,
            "messages": [{"role": "system", "content": COMPLIANCE_SYSTEM_PROMPT}, *messages],
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }
        body = await self._post("/chat/completions", payload)
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ExternalServiceError(service=_SERVICE_NAME, message=f"Malformed completion response: {exc}") from exc
        return content or "No response generated"

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
        except httpx.TimeoutException as exc:
            logger.warning("AI provider request timed out", url=url, timeout_seconds=self._timeout_seconds)
            raise ExternalServiceError(service=_SERVICE_NAME, message="Request timed out") from exc
        except httpx.RequestError as exc:
            logger.error("AI provider request failed", url=url, error=str(exc))
            raise ExternalServiceError(service=_SERVICE_NAME, message=f"Request error: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "AI provider returned an error status",
                url=url,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise ExternalServiceError(
                service=_SERVICE_NAME,
                message=f"Provider returned status {response.status_code}",
            )
        return response.json()
