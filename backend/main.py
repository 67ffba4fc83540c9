"""
Image cache service entry point.

Loads the JSON config, configures logging and serves the FastAPI app
with uvicorn.
"""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app_config import ConfigIOError, ConfigStore, dump_config
from image_cache import CachePolicyEngine, CacheState, RemoteFetcher, router
from image_transcoder import ImageTranscoder

logger = logging.getLogger(__name__)


def configure_logging(log_file_name: str = "", level: int = logging.INFO) -> None:
    """Log to stdout, and to a file as well when one is configured."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file_name:
        log_path = Path(log_file_name)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=level,
        handlers=handlers,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class ImageCacheHTTPMiddleware(BaseHTTPMiddleware):
    """GET-only access, CORS header on every response, catch-all 500."""

    async def dispatch(self, request: Request, call_next):
        if request.method != "GET":
            response = PlainTextResponse("Method not allowed", status_code=status.HTTP_405_METHOD_NOT_ALLOWED)
        else:
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(f"Unhandled exception: {type(e).__name__}: {e}", exc_info=True)
                response = JSONResponse(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    content={"detail": "Internal server error"},
                )
        response.headers["Access-Control-Allow-Origin"] = "*"
        return response


def build_engine(config_store: ConfigStore, cache_root: str = ".") -> CachePolicyEngine:
    """
    Load the config and wire the engine.

    Raises:
        ConfigIOError: config file unreadable
    """
    config = config_store.load()
    state = CacheState(config)
    fetcher = RemoteFetcher(ImageTranscoder())
    return CachePolicyEngine(state, config_store, fetcher, cache_root=cache_root)


def create_app(engine: CachePolicyEngine) -> FastAPI:
    """Create the FastAPI app around an already wired engine."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start()
        yield
        await engine.stop()
        await engine.fetcher.close()
        logger.info("Image cache service stopped")

    app = FastAPI(
        title="Image Cache",
        description="Random image proxy backed by a local cache folder",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.engine = engine
    app.add_middleware(ImageCacheHTTPMiddleware)
    app.include_router(router)
    return app


def main(config_path: Optional[str] = None) -> None:
    import uvicorn

    config_store = ConfigStore(config_path) if config_path else ConfigStore()
    configure_logging()
    try:
        engine = build_engine(config_store)
    except ConfigIOError as e:
        logger.critical(f"Failed to load config: {e}")
        raise SystemExit(1)

    configure_logging(engine.config.log_file_name)
    logger.info(f"Initialized config:\n{dump_config(engine.config)}")
    logger.info(f"Listening on port: {engine.config.listen_port}")

    uvicorn.run(
        create_app(engine),
        host="0.0.0.0",
        port=engine.config.listen_port,
        log_config=None,
    )


if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else None)
