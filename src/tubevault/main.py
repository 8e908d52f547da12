"""FastAPI application factory.

Run with: ``uvicorn tubevault.main:app``
"""

from fastapi import FastAPI

from tubevault import __version__
from tubevault.api.exception_handlers import register_exception_handlers
from tubevault.api.routers import api_router
from tubevault.infrastructure.lifecycle import lifespan
from tubevault.infrastructure.observability import RequestLoggingMiddleware


def create_app(with_lifespan: bool = True) -> FastAPI:
    """Build the application.

    with_lifespan=False skips startup/shutdown so tests can wire app.state themselves.
    """
    app = FastAPI(
        title="TubeVault",
        version=__version__,
        lifespan=lifespan if with_lifespan else None,
    )
    app.add_middleware(RequestLoggingMiddleware)
    register_exception_handlers(app)
    app.include_router(api_router)
    return app


app = create_app()
