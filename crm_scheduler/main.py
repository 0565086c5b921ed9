import logging
import sys

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from crm_scheduler.core.config import settings
from crm_scheduler.reminders.api import router as scheduling_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION)
    app.include_router(scheduling_router, prefix=settings.API_PREFIX, tags=["scheduling"])
    if settings.METRICS_ENABLED:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")
    logger.info(f"✅ {settings.PROJECT_NAME} API ready at {settings.API_PREFIX}")
    return app


app = create_app()
