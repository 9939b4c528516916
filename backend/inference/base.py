"""
Abstract base class for model-service adapters.

The pipeline only needs two capabilities from a language-model service:
a response call over an ordered, role-tagged message list and a single-text
embedding call. Adapters implement the transport details behind this
interface so the orchestrator and router can treat them interchangeably.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from models import ModelResponse, ResponsesRequest

logger = logging.getLogger(__name__)


class ModelServiceError(Exception):
    """Raised when the model service fails a request.

    ``status_code`` is None for transport failures (connection refused,
    timeouts). ``retryable`` is True for transport failures and 5xx.
    """

    def __init__(self, message: str, status_code: Optional[int] = None,
                 body: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body or {}

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500


class ModelService(ABC):
    """Uniform interface over a language-model service."""

    @abstractmethod
    async def respond(self, request: ResponsesRequest) -> ModelResponse:
        """Run one response call.

        Args:
            request: Model name, ordered messages, optional cache key and
                output-token cap.

        Returns:
            ModelResponse with the extracted output text and the raw payload.
        """
        ...

    @abstractmethod
    async def embed(self, model: str, text: str) -> list[float]:
        """Embed a single text and return its vector."""
        ...

    async def aclose(self):
        """Release transport resources. Default is a no-op."""
        return None
