from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ProviderKind(str, Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    GROQ = "groq"
    LMSTUDIO = "lmstudio"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


@dataclass(frozen=True)
class PromptMessage:
    role: str
    content: str

    def as_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class SamplingOptions:
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    num_predict: Optional[int] = None
    stop: Optional[Tuple[str, ...]] = None

    def merged(self, overrides: Optional["SamplingOptions"]) -> "SamplingOptions":
        if overrides is None:
            return self
        return SamplingOptions(
            temperature=overrides.temperature if overrides.temperature is not None else self.temperature,
            top_p=overrides.top_p if overrides.top_p is not None else self.top_p,
            top_k=overrides.top_k if overrides.top_k is not None else self.top_k,
            num_predict=overrides.num_predict if overrides.num_predict is not None else self.num_predict,
            stop=overrides.stop if overrides.stop is not None else self.stop,
        )


@dataclass(frozen=True)
class CompletionRequest:
    """Model input for one turn. Built once and never mutated."""

    model: str
    messages: Tuple[PromptMessage, ...]
    context_window: int
    estimated_tokens: int = 0
    options: SamplingOptions = field(default_factory=SamplingOptions)

    def message_dicts(self) -> List[Dict[str, str]]:
        return [message.as_dict() for message in self.messages]

    def system_text(self) -> str:
        return "\n\n".join(m.content for m in self.messages if m.role == "system")

    def conversation(self) -> List[PromptMessage]:
        return [m for m in self.messages if m.role != "system"]

    def serialize(self) -> Dict[str, Any]:
        options = {
            key: value
            for key, value in {
                "num_ctx": self.context_window,
                "temperature": self.options.temperature,
                "top_p": self.options.top_p,
                "top_k": self.options.top_k,
                "num_predict": self.options.num_predict,
                "stop": list(self.options.stop) if self.options.stop else None,
            }.items()
            if value is not None
        }
        return {"model": self.model, "messages": self.message_dicts(), "options": options}


@dataclass(frozen=True)
class StreamChunk:
    content: str = ""
    done: bool = False
    error: Optional[str] = None
