from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .dependencies import Services, build_services, lifespan, settings
from .routes import chat, chats, logs, providers, system, system_prompts
from .routes import settings as settings_routes


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services(settings)
    app = FastAPI(title="Chat Relay", version="0.1.0", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[services.settings.frontend_origin, "http://localhost", "http://127.0.0.1"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(system.router)
    app.include_router(chat.router)
    app.include_router(chats.router)
    app.include_router(system_prompts.router)
    app.include_router(providers.router)
    app.include_router(settings_routes.router)
    app.include_router(logs.router)
    return app


logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()


def main() -> None:
    import uvicorn

    port = int(os.environ.get("BACKEND_PORT", "8000"))
    uvicorn.run("chat_relay.app:app", host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
