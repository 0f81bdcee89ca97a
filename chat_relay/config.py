from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class AppSettings:
    data_dir: Path
    db_path: Path
    ollama_base_url: str
    retrieval_base_url: Optional[str]
    retrieval_timeout: float
    rag_top_k: int
    stream_timeout: float
    chunk_timeout: float
    connect_timeout: float
    frontend_origin: str
    log_level: str


def _int_env(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw or default)
    except (TypeError, ValueError):
        return int(default)


def _float_env(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw or default)
    except (TypeError, ValueError):
        return float(default)


def _str_env(name: str, default: str = "") -> str:
    return (os.environ.get(name, default) or default).strip()


def _optional_str_env(name: str) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None or str(raw).strip() == "":
        return None
    return str(raw).strip()


def load_settings() -> AppSettings:
    data_dir = Path(os.environ.get("DATA_DIR", "./data"))
    db_path = Path(os.environ.get("CHAT_DB_PATH") or (data_dir / "chat.db"))

    retrieval_base_url = _optional_str_env("RETRIEVAL_BASE_URL")

    return AppSettings(
        data_dir=data_dir,
        db_path=db_path,
        ollama_base_url=_str_env("OLLAMA_BASE_URL", "http://localhost:11434").rstrip("/"),
        retrieval_base_url=retrieval_base_url.rstrip("/") if retrieval_base_url else None,
        retrieval_timeout=_float_env("RETRIEVAL_TIMEOUT", "15"),
        rag_top_k=max(1, _int_env("RAG_TOP_K", "5")),
        stream_timeout=_float_env("STREAM_TIMEOUT", "120"),
        chunk_timeout=_float_env("CHUNK_TIMEOUT", "30"),
        connect_timeout=_float_env("CONNECT_TIMEOUT", "10"),
        frontend_origin=_str_env("FRONTEND_ORIGIN", f"http://localhost:{os.environ.get('FRONTEND_PORT', '5173')}"),
        log_level=_str_env("LOG_LEVEL", "INFO").upper(),
    )
