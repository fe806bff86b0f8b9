# observer/rerank/ollama.py
from __future__ import annotations

import logging
import re

import httpx

from observer.errors import BackendUnavailable
from observer.http_retry import post_json_with_retry

log = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
MAX_HEADLINE = 200

_LINE = re.compile(r"^\s*(\d+)\s*[.:\- ]\s*(-?\d+(?:\.\d+)?)")


def build_prompt(query: str, texts: list[str]) -> str:
    lines = [
        "Rate the relevance of each headline to this topic on a scale of 0-10.",
        "",
        f"Topic: {query}",
        "",
        "Headlines:",
    ]
    for i, text in enumerate(texts, start=1):
        headline = text if len(text) <= MAX_HEADLINE else text[:MAX_HEADLINE] + "..."
        lines.append(f"{i}. {headline}")
    lines.append("")
    lines.append("Respond with ONLY the scores, one per line, format: 'N. score'")
    lines.append("Example: '1. 8' means headline 1 has relevance score 8")
    return "\n".join(lines)


def parse_scores(response: str, expected: int) -> list[float]:
    """
    Parse "N. score" lines into `expected` scores in [0, 1].

    Scores above 1 are read as the 0-10 scale; "8/10" is accepted. Headlines
    the model skipped or garbled keep the neutral 0.5.
    """
    scores = [NEUTRAL_SCORE] * expected
    for line in (response or "").splitlines():
        m = _LINE.match(line)
        if not m:
            continue
        idx = int(m.group(1))
        if not 1 <= idx <= expected:
            continue
        score = float(m.group(2))
        if score > 1:
            score /= 10.0
        scores[idx - 1] = min(1.0, max(0.0, score))
    return scores


class OllamaReranker:
    """
    LLM relevance scorer on a local Ollama server. Slow, so candidates are
    scored one per request and the result waits for the user to apply it.
    """

    auto_apply = False

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
        backoffs: tuple[float, ...] | None = None,
    ):
        self.host = host.rstrip("/")
        self.model = model or ""
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._backoffs = backoffs

    @property
    def name(self) -> str:
        return f"ollama/{self.model or '?'}"

    async def detect_model(self) -> str:
        """Prefer a model named like a reranker, then an instruct model, then the first listed."""
        try:
            resp = await self._client.get(f"{self.host}/api/tags")
            resp.raise_for_status()
            names = [m.get("name", "") for m in resp.json().get("models") or []]
        except (httpx.HTTPError, ValueError) as e:
            raise BackendUnavailable("ollama model discovery failed", stage="rerank", cause=e) from e
        for marker in ("rerank", "instruct"):
            for n in names:
                if marker in n.lower():
                    return n
        if not names:
            raise BackendUnavailable("ollama has no models installed", stage="rerank")
        return names[0]

    async def _generate(self, prompt: str) -> str:
        if not self.model:
            self.model = await self.detect_model()
            log.info("Using %s for reranking", self.model)
        kwargs = {"backoffs": self._backoffs} if self._backoffs is not None else {}
        body = await post_json_with_retry(
            self._client,
            f"{self.host}/api/generate",
            {
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {"temperature": 0.1, "num_predict": 100},
            },
            stage="rerank",
            **kwargs,
        )
        return str(body.get("response", ""))

    async def score_one(self, query: str, text: str) -> float:
        response = await self._generate(build_prompt(query, [text]))
        return parse_scores(response, 1)[0]

    async def aclose(self) -> None:
        await self._client.aclose()
