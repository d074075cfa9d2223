"""
Salon Broadcast API - FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.v1.api import api_router
from .core.config import settings
from .core.logging_config import configure_logging
from .db.session import init_db
from .services.campaign_service import CampaignExecutionError, CampaignStateError
from .services.scoring_service import ScoringError
from .worker import create_dispatcher

configure_logging()
LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    LOGGER.info("%s %s started", settings.PROJECT_NAME, settings.VERSION)
    yield


app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan)

# Sends are only enqueued here; `python -m app.worker` executes them
app.state.dispatcher = create_dispatcher()


def _error(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


app.add_exception_handler(ValueError, _error(400))
app.add_exception_handler(LookupError, _error(404))
app.add_exception_handler(CampaignStateError, _error(409))
app.add_exception_handler(CampaignExecutionError, _error(503))
app.add_exception_handler(ScoringError, _error(503))

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/health")
def health():
    return {"status": "ok"}
