"""
Prompt builder — assembles the ordered message stack for one model call.

Order is fixed: pinned context, then system messages in the order they were
added, then the user message. The cache key is derived from the pinned text
alone so identical pinned context maps to the same key in every session.
"""

import hashlib
from typing import Optional

from models import Message, ResponsesRequest


def cache_key_for(text: str) -> str:
    return "ctx-" + hashlib.sha1(text.encode("utf-8")).hexdigest()


class PromptBuilder:

    def __init__(self):
        self.pinned: Optional[str] = None
        self.cache_key: Optional[str] = None
        self.system: list[str] = []

    def with_cached_context(self, text: str) -> "PromptBuilder":
        """Set the pinned context. Empty text is ignored; the first call wins."""
        if text and self.pinned is None:
            self.pinned = text
            self.cache_key = cache_key_for(text)
        return self

    def with_system_prompt(self, text: str) -> "PromptBuilder":
        if text:
            self.system.append(text)
        return self

    def with_system_prompts(self, texts) -> "PromptBuilder":
        for text in texts or []:
            self.with_system_prompt(text)
        return self

    def build(self, model: str, user_message: str,
              max_output_tokens: Optional[int] = None) -> ResponsesRequest:
        messages = []
        if self.pinned is not None:
            messages.append(Message.text("system", self.pinned))
        messages.extend(Message.text("system", s) for s in self.system)
        messages.append(Message.text("user", user_message))
        return ResponsesRequest(
            model=model,
            input=messages,
            prompt_cache_key=self.cache_key,
            max_output_tokens=max_output_tokens,
        )
