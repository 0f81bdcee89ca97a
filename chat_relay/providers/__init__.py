from __future__ import annotations

from .adapter import WIRE_SPECS, Adapter
from .base import CompletionRequest, PromptMessage, ProviderKind, SamplingOptions, StreamChunk
from .registry import ProviderRegistry

__all__ = [
    "Adapter",
    "CompletionRequest",
    "PromptMessage",
    "ProviderKind",
    "ProviderRegistry",
    "SamplingOptions",
    "StreamChunk",
    "WIRE_SPECS",
]
