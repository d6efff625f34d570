"""Web search used as grounding for providers without built-in search."""

from __future__ import annotations

from typing import Protocol

import httpx
import structlog

from .contracts import GroundingMetadata, GroundingSource

log = structlog.get_logger()

_SNIPPET_CHARS = 300
_CONTEXT_CHARS = 500


class WebSearchService(Protocol):
    async def search(self, query: str) -> list[GroundingSource]: ...


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


class ExaSearchClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_key: str,
        base_url: str = "https://api.exa.ai",
        num_results: int = 5,
        timeout_seconds: float = 15,
    ):
        self._client = client
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._num_results = num_results
        self._timeout = timeout_seconds

    async def search(self, query: str) -> list[GroundingSource]:
        resp = await self._client.post(
            f"{self._base_url}/search",
            headers={"x-api-key": self._api_key, "Content-Type": "application/json"},
            json={"query": query, "numResults": self._num_results, "contents": {"text": True}},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        results = resp.json().get("results") or []
        sources: list[GroundingSource] = []
        for i, item in enumerate(results):
            url = item.get("url")
            if not url:
                continue
            text = item.get("text") or ""
            sources.append(
                GroundingSource(
                    title=item.get("title") or f"Result {i + 1}",
                    url=url,
                    snippet=_truncate(text, _SNIPPET_CHARS) if text else None,
                )
            )
        log.debug("web_search_results", count=len(sources))
        return sources


def search_context(sources: list[GroundingSource]) -> str:
    blocks = [
        f"[{i + 1}] {s.title}\nURL: {s.url}\n{_truncate(s.snippet, _CONTEXT_CHARS) if s.snippet else 'No content available'}\n"
        for i, s in enumerate(sources)
    ]
    return "\n---\n".join(blocks)


def enhanced_prompt(question: str, sources: list[GroundingSource]) -> str:
    return (
        "You have access to the following current information from web search results:\n\n"
        f"{search_context(sources)}\n\n"
        "Please use this information to provide an accurate and up-to-date response to the following "
        "user question. Cite specific sources when referencing the search results.\n\n"
        f"User Question: {question}"
    )


def to_grounding(sources: list[GroundingSource]) -> GroundingMetadata | None:
    return GroundingMetadata(sources=tuple(sources)) if sources else None
