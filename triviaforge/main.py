import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from importlib.metadata import version as pkg_version

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from triviaforge.api import forge_router, health_router, identifiers_router, mint_router
from triviaforge.config import settings
from triviaforge.db.database import close_db, init_db
from triviaforge.models.failure import KnownError, create_known_failure, create_unknown_failure

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    await init_db()
    yield
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=pkg_version("triviaforge"),
    lifespan=lifespan,
)


@app.exception_handler(KnownError)
async def known_error_handler(_request: Request, exc: KnownError) -> JSONResponse:
    """Render any KnownError as a known_failure envelope with its status code."""
    response = create_known_failure(exc)
    return JSONResponse(status_code=exc.status_code, content=response.model_dump(mode="json"))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("UNHANDLED_ERROR", extra={"path": request.url.path})
    response = create_unknown_failure(exc)
    return JSONResponse(status_code=500, content=response.model_dump(mode="json"))


app.include_router(forge_router)
app.include_router(health_router)
app.include_router(identifiers_router)
app.include_router(mint_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
