"""FastAPI application wiring for the Hebrew turn pipeline.

This module bootstraps the HTTP API:

- Configures logging, Prometheus metrics and rate limiting.
- Builds the :class:`~app.core.bootstrap.Pipeline` inside the application
  lifespan so every component is created, started and closed explicitly.
- Mounts the conversation, knowledge and live-event routes.

``create_app`` accepts a pre-built pipeline, which is how tests run the API
against in-memory stores and fake providers.
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .core.bootstrap import Pipeline
from .core.rate_limit import limiter
from .core.settings import get_settings
from .routers import conversations, knowledge

load_dotenv()

logger = logging.getLogger(__name__)


def create_app(pipeline: Pipeline | None = None, *, expose_metrics: bool = True) -> FastAPI:
    """Create the API application.

    When ``pipeline`` is omitted one is built from the environment on
    startup. A supplied pipeline is started and closed with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = pipeline or Pipeline.build(get_settings())
        await active.start()
        app.state.pipeline = active
        try:
            yield
        finally:
            await active.close()

    app = FastAPI(title="Hebrew Turn Pipeline", version=__version__, lifespan=lifespan)
    init_logging(app)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    app.include_router(conversations.router)
    app.include_router(knowledge.router)

    @app.get("/api/health")
    async def health():
        """Report liveness and pipeline readiness as a minimal JSON body."""
        active = getattr(app.state, "pipeline", None)
        return {"status": "ok", "pipeline": active.state.value if active else "starting"}

    @app.get("/api/version")
    async def version():
        """Return version information for the application."""
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    if expose_metrics:
        Instrumentator().instrument(app).expose(
            app, include_in_schema=False, endpoint="/api/metrics"
        )
    return app


app = create_app()
