from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .api.routes import api_router
from .config import configure_logging, get_settings
from .db import get_db
from .services.analysis_queue import AnalysisQueue
from .services.transcript_analyzer import TranscriptAnalyzer
import logging

# Configure logging
configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    queue = AnalysisQueue(TranscriptAnalyzer(get_db()))
    queue.start()
    app.state.analysis_queue = queue
    logger.info(
        f"Call engine API started ({'voice provider' if settings.use_provider else 'simulator'} mode, "
        f"webhook signature {'on' if settings.webhook_secret else 'off'})"
    )
    try:
        yield
    finally:
        await queue.stop()


app = FastAPI(title="Check-in Call Engine", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api")

@app.get("/")
async def root():
    return {"status": "ok"}
