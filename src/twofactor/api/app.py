"""FastAPI application exposing the 2FA flows over HTTP."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from twofactor import __version__
from twofactor.api.routes import login_router, router
from twofactor.db import close_pool, init_pool


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_pool()
    yield
    await close_pool()


def create_app(*, use_db: bool = True) -> FastAPI:
    app = FastAPI(
        title="twofactor",
        description="TOTP two-factor authentication with backup codes",
        version=__version__,
        lifespan=lifespan if use_db else None,
    )

    app.include_router(login_router)
    app.include_router(router)
    return app


app = create_app()
