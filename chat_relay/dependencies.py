from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import FastAPI, Request

from .config import AppSettings, load_settings
from .credentials import CredentialStore
from .persistence import ChatStore
from .providers.registry import ProviderRegistry
from .retrieval import HttpRetrievalService, RetrievalGateway
from .services.audit import AuditLogger
from .services.context import ContextAssembler
from .services.relay import ChatTurnRelay
from .services.settings import SettingsService
from .services.titles import TitleGenerator, TitleWorker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: AppSettings
    store: ChatStore
    credentials: CredentialStore
    registry: ProviderRegistry
    settings_service: SettingsService
    assembler: ContextAssembler
    audit: AuditLogger
    titles: TitleWorker
    relay: ChatTurnRelay


def build_services(
    settings: AppSettings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    retrieval: Optional[RetrievalGateway] = None,
) -> Services:
    store = ChatStore(settings.db_path)
    credentials = CredentialStore(store)
    registry = ProviderRegistry(credentials, settings, transport=transport)
    settings_service = SettingsService(store)
    if retrieval is None and settings.retrieval_base_url:
        retrieval = RetrievalGateway(
            HttpRetrievalService(settings.retrieval_base_url, timeout=settings.retrieval_timeout, transport=transport),
            default_top_k=settings.rag_top_k,
        )
    assembler = ContextAssembler(retrieval, top_k=settings.rag_top_k)
    audit = AuditLogger(store)
    titles = TitleWorker(store, TitleGenerator(registry), settings_service)
    relay = ChatTurnRelay(store, registry, assembler, audit, settings_service, titles)
    return Services(
        settings=settings,
        store=store,
        credentials=credentials,
        registry=registry,
        settings_service=settings_service,
        assembler=assembler,
        audit=audit,
        titles=titles,
        relay=relay,
    )


settings = load_settings()


def get_services(request: Request) -> Services:
    return request.app.state.services


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    await services.store.init()
    logger.info("Chat store ready at %s", services.settings.db_path)
    yield
    await services.titles.stop()
