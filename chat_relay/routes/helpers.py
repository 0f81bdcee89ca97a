from __future__ import annotations

import json
from typing import Any, Dict

from ..services.audit import decode_log_row


def json_line(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":")) + "\n"


def format_chat_row(chat: Dict[str, Any]) -> Dict[str, Any]:
    data = {
        "id": chat.get("id"),
        "title": chat.get("title"),
        "model": chat.get("model"),
        "systemPromptId": chat.get("system_prompt_id"),
        "createdAt": chat.get("created_at"),
        "updatedAt": chat.get("updated_at"),
    }
    if "message_count" in chat:
        data["messageCount"] = int(chat.get("message_count") or 0)
    if chat.get("system_prompt_name"):
        data["systemPromptName"] = chat.get("system_prompt_name")
    return data


def format_message_row(message: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": message.get("id"),
        "chatId": message.get("chat_id"),
        "role": message.get("role"),
        "content": message.get("content"),
        "model": message.get("model"),
        "createdAt": message.get("created_at"),
    }


def format_system_prompt_row(prompt: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": prompt.get("id"),
        "name": prompt.get("name"),
        "content": prompt.get("content"),
        "createdAt": prompt.get("created_at"),
        "updatedAt": prompt.get("updated_at"),
    }


def format_provider_row(provider: Dict[str, Any]) -> Dict[str, Any]:
    # keys never leave the server
    return {
        "name": provider.get("name"),
        "baseUrl": provider.get("base_url"),
        "models": list(provider.get("models") or []),
        "enabled": bool(provider.get("enabled")),
        "hasApiKey": bool(provider.get("api_key")),
        "updatedAt": provider.get("updated_at"),
    }


def format_log_row(row: Dict[str, Any]) -> Dict[str, Any]:
    log = decode_log_row(row)
    return {
        "id": log.get("id"),
        "chatId": log.get("chat_id"),
        "model": log.get("model"),
        "messages": log.get("messages"),
        "ragContext": log.get("rag_context"),
        "collectionIds": log.get("collection_ids") or [],
        "estimatedTokens": log.get("estimated_tokens"),
        "contextWindowSize": log.get("context_window_size"),
        "responseTokens": log.get("response_tokens"),
        "response": log.get("response"),
        "responseTime": log.get("response_time"),
        "error": log.get("error"),
        "userMessage": log.get("user_message"),
        "createdAt": log.get("created_at"),
    }


def format_model_stats_row(row: Dict[str, Any]) -> Dict[str, Any]:
    count = int(row.get("count") or 0)
    errors = int(row.get("error_count") or 0)
    return {
        "model": row.get("model"),
        "count": count,
        "avgInputTokens": float(row.get("avg_input_tokens") or 0),
        "avgOutputTokens": float(row.get("avg_output_tokens") or 0),
        "avgResponseTime": float(row.get("avg_response_time") or 0),
        "errorRate": errors / count if count else 0.0,
    }
