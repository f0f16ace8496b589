from fastapi import FastAPI
from contextlib import asynccontextmanager
from app.core.config import settings
from app.core.db.base import Database
from app.core.logging import get_logger, setup_logging
from app.apis.auth.main import router as auth_router
from app.apis.quiz.main import router as quiz_router, quiz_error_handler
from app.modules.quiz.errors import QuizError
from app.modules.quiz.feed import ChangeFeed

import uvicorn
from fastapi.middleware.cors import CORSMiddleware


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    database = Database(
        str(settings.postgres.connection_string), echo=settings.app.is_testing is True
    )
    if settings.quiz.create_tables:
        await database.create_all()
    app.state.db = database
    app.state.feed = ChangeFeed(queue_size=settings.quiz.feed_queue_size)
    logger.info("Store ready, change feed online")
    try:
        yield
    finally:
        await database.dispose()


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app.name, version=settings.app.version, lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(QuizError, quiz_error_handler)  # type: ignore[arg-type]

    app.include_router(auth_router)
    app.include_router(quiz_router)

    @app.get("/")
    async def root():
        return {
            "status": "ok",
            "app": settings.app.name,
            "version": settings.app.version,
        }

    return app


app = create_app()


if __name__ == "__main__":
    try:
        uvicorn.run(
            "main:app",
            host="0.0.0.0",
            port=settings.app.port,
            reload=not settings.app.is_production,
        )
    except Exception as e:
        logger.error(f"An error occurred when starting the server: {e}.")
