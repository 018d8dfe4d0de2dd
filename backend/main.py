from fastapi import FastAPI
import uvicorn
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from core.config import settings
from core.logging_config import configure_logging, get_logger
from counting.models import utcnow
from db.database import create_db_and_tables, engine
from routers.inventory import router as inventory_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(level=settings.log_level)
    await create_db_and_tables()
    logger.info("inventory api started", extra={"default_mode_tag": settings.default_mode_tag})
    yield


app = FastAPI(
    title="WellStocked Inventory API",
    description="Taproom inventory counting sessions and stock reconciliation",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Counting sessions, reconciliation and keg summaries
app.include_router(inventory_router, prefix="/inventory", tags=["inventory"])


@app.get("/health", tags=["health"])
async def health_check():
    """Database reachability; counts can still be queued offline when this is down."""
    status = {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "default_mode_tag": settings.default_mode_tag,
        "checks": {"database": "unknown"},
    }
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        status["checks"]["database"] = "connected"
    except (SQLAlchemyError, OSError) as e:
        logger.warning("health check failed", extra={"error": str(e)})
        status["status"] = "unhealthy"
        status["checks"]["database"] = f"error: {e}"
        return JSONResponse(status_code=503, content=status)
    return status


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
