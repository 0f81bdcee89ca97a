from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .providers.base import SamplingOptions


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatOptions(CamelModel):
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    top_k: Optional[int] = Field(default=None, ge=1)
    num_predict: Optional[int] = Field(default=None, ge=1)
    stop: Optional[List[str]] = None

    def to_sampling(self) -> SamplingOptions:
        return SamplingOptions(
            temperature=self.temperature,
            top_p=self.top_p,
            top_k=self.top_k,
            num_predict=self.num_predict,
            stop=tuple(self.stop) if self.stop else None,
        )


class ChatStreamRequest(CamelModel):
    chat_id: str = Field(min_length=1)
    model: str = Field(min_length=1)
    message: str = Field(min_length=1)
    collection_ids: List[str] = Field(default_factory=list)
    options: Optional[ChatOptions] = None


class ChatCreate(CamelModel):
    model: str = Field(min_length=1)
    title: Optional[str] = None
    system_prompt_id: Optional[str] = None


class ChatUpdate(CamelModel):
    title: Optional[str] = None
    model: Optional[str] = None
    system_prompt_id: Optional[str] = None


class SystemPromptCreate(CamelModel):
    name: str = Field(min_length=1)
    content: str = Field(min_length=1)


class ProviderUpdate(CamelModel):
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    models: List[str] = Field(default_factory=list)
    enabled: bool = True


class SettingsPatch(BaseModel):
    model_config = ConfigDict(extra="allow")

    def sections(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class SystemPromptUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1)
    content: Optional[str] = Field(default=None, min_length=1)


class ProviderTest(CamelModel):
    provider: str = Field(min_length=1)
    api_key: Optional[str] = None
    base_url: Optional[str] = None
