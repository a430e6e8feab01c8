from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router
from .app_logging import configure_logging, install_access_logging
from .config import Settings, get_settings, runtime_secret_issues
from .services import build_services
from .whatsapp import WhatsAppSender

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def create_app(
    settings: Settings | None = None,
    *,
    sender: WhatsAppSender | None = None,
    clock: Callable[[], datetime] = _now_utc,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set the required WhatsApp and events secrets "
                + "or set RUNTIME_SECRET_GUARD_MODE=warn for local development."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.state.services = build_services(settings, sender=sender, clock=clock)

    origins = [value.strip().rstrip("/") for value in settings.cors_allowed_origins.split(",") if value.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_access_logging(app, skip_paths={f"{settings.api_prefix}/health"})

    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "inbox_web.main:app",
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
