"""Error taxonomy for chat turns.

Configuration errors are raised before anything is persisted. Upstream errors
end a turn in the failed state. Persistence errors are fatal to the turn.
"""

from __future__ import annotations

from typing import Optional


class ChatRelayError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(ChatRelayError):
    pass


class ProviderUnavailableError(ConfigurationError):
    def __init__(self, provider: str, reason: str = "no API key configured") -> None:
        super().__init__(f"Provider '{provider}' is unavailable: {reason}")
        self.provider = provider


class ChatNotFoundError(ConfigurationError):
    def __init__(self, chat_id: str) -> None:
        super().__init__(f"Chat '{chat_id}' not found")
        self.chat_id = chat_id


class UpstreamError(ChatRelayError):
    def __init__(self, message: str, *, provider: Optional[str] = None, http_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.http_status = http_status


class StreamTimeoutError(UpstreamError):
    pass


class PersistenceError(ChatRelayError):
    pass
