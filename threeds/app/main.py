"""FastAPI application hosting 3DS authentication attempts."""

from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from ..core.browser import managed_browser
from ..core.collector import BrowserInfoCollector
from ..core.config import FrameBackend, get_settings
from ..core.logging import setup_logging, get_logger
from .routes import router as attempts_router, shutdown_attempts


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    setup_logging()
    logger = get_logger(__name__)
    settings = get_settings()

    async with AsyncExitStack() as stack:
        if settings.frame_backend == FrameBackend.PLAYWRIGHT:
            browser = await stack.enter_async_context(managed_browser())
            app.state.collector = BrowserInfoCollector(await browser.read_browser_info())
        else:
            app.state.collector = BrowserInfoCollector()

        logger.info(
            "3DS client service starting",
            frame_backend=settings.frame_backend.value,
            fingerprint_timeout_ms=settings.fingerprint_timeout_ms,
            api_endpoint=settings.api_endpoint,
        )

        yield

        # Shutdown (attempts release their contexts before the browser stops)
        await shutdown_attempts()
    logger.info("3DS client service shutting down")


app = FastAPI(
    title="3DS Authentication Client",
    description="Drives 3-D Secure 2 browser-flow authentication against a 3DS Server",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(attempts_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    settings = get_settings()
    return JSONResponse({
        "service": "3DS Authentication Client",
        "status": "running",
        "frame_backend": settings.frame_backend.value,
        "version": "1.0.0"
    })


@app.get("/health")
async def health():
    """Kubernetes-style health check."""
    return JSONResponse({"status": "healthy"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "threeds.app.main:app",
        host="0.0.0.0",
        port=8080,
    )
