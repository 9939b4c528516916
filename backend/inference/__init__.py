"""
Inference package — model-service abstraction layer.

Quick start:
    from inference import OpenAICompatService
    service = OpenAICompatService(api_key="...")
    reply = await service.respond(request)
"""

from inference.base import ModelService, ModelServiceError
from inference.openai_compat import OpenAICompatService, extract_output_text

__all__ = [
    "ModelService",
    "ModelServiceError",
    "OpenAICompatService",
    "extract_output_text",
]
