"""
OpenAI-compatible model-service adapter.

Covers any server that implements the Responses (/v1/responses) and
Embeddings (/v1/embeddings) contracts. Requests use a fixed client timeout
and a small bounded retry budget with linear backoff. Only transport
failures and 5xx statuses are retried; 4xx answers fail immediately.
"""

import asyncio
import logging
from typing import Optional

import httpx

from config import MODEL_SERVICE_BACKOFF, MODEL_SERVICE_MAX_ATTEMPTS, MODEL_SERVICE_TIMEOUT
from inference.base import ModelService, ModelServiceError
from models import ModelResponse, ResponsesRequest

logger = logging.getLogger(__name__)


def extract_output_text(raw: dict) -> str:
    """Pull the reply text out of a Responses payload.

    Prefers the aggregated ``output_text`` field, then the first text content
    of the first message item (reasoning items are skipped).
    """
    text = raw.get("output_text")
    if isinstance(text, str) and text:
        return text
    for item in raw.get("output") or []:
        if not isinstance(item, dict) or item.get("type", "message") != "message":
            continue
        for content in item.get("content") or []:
            if isinstance(content, dict) and isinstance(content.get("text"), str):
                return content["text"]
    return ""


def _error_body(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {"text": resp.text[:500]}
    return body if isinstance(body, dict) else {"body": body}


class OpenAICompatService(ModelService):
    """Model-service adapter for OpenAI-compatible HTTP APIs."""

    def __init__(self, api_key: str = "",
                 base_url: str = "https://api.openai.com/v1",
                 timeout: float = MODEL_SERVICE_TIMEOUT,
                 max_attempts: int = MODEL_SERVICE_MAX_ATTEMPTS,
                 backoff_seconds: float = MODEL_SERVICE_BACKOFF,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, path: str, payload: dict) -> dict:
        """POST with retry on transport errors and 5xx."""
        url = f"{self.base_url}{path}"
        last_error: Optional[ModelServiceError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout, transport=self._transport
                ) as client:
                    resp = await client.post(url, json=payload, headers=self._headers())
            except httpx.TransportError as e:
                last_error = ModelServiceError(f"model service unreachable at {url}: {e}")
            else:
                if resp.status_code >= 500:
                    last_error = ModelServiceError(
                        f"model service error: {resp.status_code} {resp.reason_phrase}",
                        status_code=resp.status_code, body=_error_body(resp),
                    )
                elif resp.status_code >= 400:
                    raise ModelServiceError(
                        f"model service error: {resp.status_code} {resp.reason_phrase}",
                        status_code=resp.status_code, body=_error_body(resp),
                    )
                else:
                    try:
                        body = resp.json()
                    except ValueError as e:
                        raise ModelServiceError(
                            f"invalid JSON from {path}: {e}", status_code=resp.status_code,
                        )
                    if not isinstance(body, dict):
                        raise ModelServiceError(
                            f"invalid JSON from {path}: expected an object, got {type(body).__name__}",
                            status_code=resp.status_code,
                        )
                    return body

            if attempt < self.max_attempts:
                logger.warning("%s attempt %d/%d failed: %s, retrying",
                               path, attempt, self.max_attempts, last_error)
                await asyncio.sleep(self.backoff_seconds * attempt)

        raise last_error

    # ── Responses ──

    async def respond(self, request: ResponsesRequest) -> ModelResponse:
        """Run a response call via /responses."""
        raw = await self._post("/responses", request.payload())
        return ModelResponse(
            id=str(raw.get("id") or ""),
            output_text=extract_output_text(raw),
            raw=raw,
        )

    # ── Embedding ──

    async def embed(self, model: str, text: str) -> list[float]:
        """Embed one text via /embeddings."""
        raw = await self._post("/embeddings", {"model": model, "input": [text]})
        data = sorted(raw.get("data") or [], key=lambda x: x.get("index", 0))
        if not data or not data[0].get("embedding"):
            raise ModelServiceError("empty embedding response", status_code=200)
        return [float(v) for v in data[0]["embedding"]]
