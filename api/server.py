"""
FastAPI application entry point.

Sets up the application with:
- Lifespan management (connect, provision indexes, close)
- Route registration
- Middleware configuration
- Storage error mapping
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.dependencies import set_repositories
from api.routes import health_router
from core.config import settings
from core.errors import DeveloperError, RepositoryError
from core.logging import configure_logging, get_logger
from core.storage import DatabaseClient, create_database_client, create_repositories


logger = get_logger(__name__)


def create_app(database_client: Optional[DatabaseClient] = None) -> FastAPI:
    """
    Application factory.

    Args:
        database_client: Client to serve from; built from settings if omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Startup connects to MongoDB and awaits index provisioning before
        the app takes traffic; shutdown closes the connection.
        """
        configure_logging()
        logger.info("Starting explorer API...", database=settings.mongodb_database)

        client = database_client or create_database_client(settings)
        repositories = create_repositories(client)
        await client.connect()
        for repository in repositories.all():
            if repository.index_error is not None:
                logger.error(
                    "Serving without indexes; collection calls will fail until they are created",
                    collection=repository.collection_name,
                    error=repository.index_error.reason,
                )
        set_repositories(repositories)

        logger.info(
            "Explorer API started",
            host=settings.server_host,
            port=settings.server_port,
        )

        yield

        logger.info("Shutting down explorer API...")
        set_repositories(None)
        await client.close()
        logger.info("Explorer API stopped")

    app = FastAPI(
        title="Explorer API",
        description=(
            "Query, count and aggregation endpoints over events, assets, "
            "bundles, accounts and organizations."
        ),
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)

    @app.exception_handler(RepositoryError)
    async def repository_exception_handler(request: Request, exc: RepositoryError):
        logger.error(
            "Repository error",
            path=request.url.path,
            method=request.method,
            error=exc.reason,
        )
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Storage operation failed",
                "message": exc.reason if settings.debug else "An error occurred",
            },
        )

    @app.exception_handler(DeveloperError)
    async def developer_exception_handler(request: Request, exc: DeveloperError):
        logger.critical(
            "Misconfigured repository",
            path=request.url.path,
            method=request.method,
            error=exc.reason,
        )
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "recoverable": False,
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "message": str(exc) if settings.debug else "An error occurred",
            },
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.server:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.debug,
    )
