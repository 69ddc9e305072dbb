from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api.endpoints import framework, questions, response, survey, variables
from .config import settings
from .database import create_db_and_tables, engine
from .errors import AppError
from .logging import get_logger, setup_logging

logger = get_logger(__name__)


# --- Lifecycle Events ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level, settings.log_json)
    logger.info("Anwendung startet (version %s)", __version__)
    await create_db_and_tables()
    yield
    logger.info("Anwendung fährt herunter")
    await engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(title="ESG Framework Builder", version=__version__, lifespan=lifespan)

    # --- CORS Middleware (WICHTIG für Frontend-Zugriff) ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.warning(
                "%s %s rejected (%s): %s",
                request.method,
                request.url.path,
                type(exc).__name__,
                exc.message,
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(framework.router, prefix="/api", tags=["framework"])
    app.include_router(variables.router, prefix="/api", tags=["variables"])
    app.include_router(questions.router, prefix="/api", tags=["questions"])
    app.include_router(survey.router, prefix="/api/surveys", tags=["surveys"])
    app.include_router(response.router, prefix="/api", tags=["responses"])

    @app.get("/")
    async def read_root():
        return {"message": "ESG Framework Builder API", "version": __version__}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "esg_builder.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.reload_app,
    )
