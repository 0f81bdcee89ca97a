from __future__ import annotations

from .audit import AuditLogEntry, AuditLogger
from .context import AssembledContext, ContextAssembler
from .relay import ChatTurn, ChatTurnRelay, TurnState
from .settings import ChatSettings, SettingsService
from .titles import TitleGenerator, TitleWorker, title_trigger

__all__ = [
    "AssembledContext",
    "AuditLogEntry",
    "AuditLogger",
    "ChatSettings",
    "ChatTurn",
    "ChatTurnRelay",
    "ContextAssembler",
    "SettingsService",
    "TitleGenerator",
    "TitleWorker",
    "TurnState",
    "title_trigger",
]
