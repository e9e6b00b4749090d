"""
AI completion provider interfaces.

Handlers depend only on these protocols; the Gemini adapter in
``spark_engine.llm.gemini`` is the production implementation and tests
substitute scripted fakes.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel


class CompletionResult(BaseModel):
    content: str


@runtime_checkable
class AIProvider(Protocol):
    def complete(self, prompt: str) -> CompletionResult:
        ...


@runtime_checkable
class ProviderFactory(Protocol):
    def create(self, model_override: Optional[str] = None) -> AIProvider:
        ...


async def complete_text(provider: AIProvider, prompt: str) -> str:
    """Run a completion without blocking the event loop and return its text."""
    if inspect.iscoroutinefunction(provider.complete):
        result = await provider.complete(prompt)
    else:
        result = await asyncio.to_thread(provider.complete, prompt)
    return result.content
