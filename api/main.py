from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from api.dependencies import get_storage, set_storage
from api.jobs.scheduler import create_scheduler, setup_retention_job
from api.models.database import init_database
from api.routes import usage
from api.services.request_storage import SQLAlchemyStorageAdapter
from lib.request_tracer.config import load_tracker_config
from contextlib import asynccontextmanager
import logging
import os

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Startup: load configuration, initialize database and jobs
    config = load_tracker_config()
    configure_logging(config.log_level)

    storage = SQLAlchemyStorageAdapter(init_database(config.database_url))
    set_storage(storage)

    scheduler = create_scheduler()
    setup_retention_job(scheduler, get_storage, config.retention_days)
    scheduler.start()
    yield
    # Shutdown: stop jobs and release the connection pool
    scheduler.shutdown(wait=False)
    set_storage(None)
    storage.close()
    logger.info("Request tracer API stopped")

app = FastAPI(lifespan=lifespan)

allowed_origins = os.environ.get("ALLOWED_ORIGINS", "*").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(usage.router, prefix="/usage", tags=["usage"])


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        reload=os.environ.get("DEBUG", "false").lower() == "true"
    )
