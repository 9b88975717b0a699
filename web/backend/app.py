import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from engine.logger import get_logger
from web.backend.routers import suggestions

logger = get_logger("api")


def create_app() -> FastAPI:
    app = FastAPI(title="Suggestion Planner API", version="1.0")

    raw_origins = os.getenv("PLANNER_ALLOWED_ORIGINS", "*")
    allow_origins = [o.strip() for o in raw_origins.split(",") if o.strip()]
    allow_credentials = "*" not in allow_origins

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": "Suggestion Planner"}

    app.include_router(suggestions.router, prefix="/api/v1/suggestions", tags=["suggestions"])
    logger.info("API routes registered")

    return app


app = create_app()
