"""PageIndex client for document-level reasoning (Tier 3).

PageIndex builds hierarchical trees over uploaded documents and answers
questions by reasoning over those trees. The retriever only needs two
things from it: whether it is configured, and a combined query across a
set of document trees.
"""

from typing import Any, Protocol

import httpx

from levi_agent.core.config import Settings, get_settings
from levi_agent.core.errors import ConfigError, UpstreamError
from levi_agent.core.logging import get_logger

logger = get_logger(__name__)


class DeepReasoningService(Protocol):
    """Contract the retriever relies on for Tier 3."""

    def is_available(self) -> bool: ...

    async def query(self, tree_ids: list[str], question: str) -> str | None: ...


class PageIndexClient:
    """HTTP client for the PageIndex chat endpoint."""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings()
        self._http_client = http_client

    def is_available(self) -> bool:
        return bool(self.settings.PAGEINDEX_API_KEY)

    async def query(self, tree_ids: list[str], question: str) -> str | None:
        """
        Ask PageIndex a question across one or more document trees.

        Args:
            tree_ids: PageIndex doc ids (pageindex_tree_id on our digests)
            question: The user's natural-language question

        Returns:
            Answer text, or None if PageIndex had nothing to say

        Raises:
            ConfigError: If PAGEINDEX_API_KEY is not configured
            UpstreamError: If the request fails or the body is malformed
        """
        if not self.settings.PAGEINDEX_API_KEY:
            raise ConfigError("PAGEINDEX_API_KEY is not configured")
        if not tree_ids:
            return None

        payload = {
            "messages": [{"role": "user", "content": question}],
            "doc_id": tree_ids,
            "stream": False,
        }
        url = f"{self.settings.PAGEINDEX_API_URL.rstrip('/')}/chat/completions"
        headers = {"api_key": self.settings.PAGEINDEX_API_KEY}

        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    url, json=payload, headers=headers, timeout=self.settings.PAGEINDEX_TIMEOUT_SECONDS
                )
            else:
                async with httpx.AsyncClient(timeout=self.settings.PAGEINDEX_TIMEOUT_SECONDS) as client:
                    response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise UpstreamError("PageIndex", f"request failed: {e}") from e

        if response.is_error:
            raise UpstreamError("PageIndex", response.text[:500], response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError("PageIndex", "response body is not JSON", response.status_code) from e

        answer = _extract_answer(data)
        logger.info(
            f"PageIndex answered across {len(tree_ids)} documents "
            f"({len(answer) if answer else 0} chars)"
        )
        return answer or None


def _extract_answer(data: Any) -> str | None:
    """Pull the answer text from an OpenAI-style or flat {answer} body."""
    if not isinstance(data, dict):
        raise UpstreamError("PageIndex", f"unexpected response type {type(data).__name__}")

    if isinstance(data.get("answer"), str):
        return data["answer"].strip()

    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return content.strip()

    return None
