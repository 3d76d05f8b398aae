from contextlib import asynccontextmanager
from datetime import datetime
import time
import logging

from fastapi import Depends, FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.middleware import SlowAPIMiddleware
from sqlmodel import Session

from config import get_settings

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from database import check_database_health, create_db_and_tables, get_session
import models  # Import models to register them with SQLModel
from errors import register_exception_handlers
from middleware.request_context import RequestContextMiddleware
from rate_limit import limiter
from routers import (
    appointments, audit, auth, branches, doctors, expenses, meta, notifications,
    patients, radiologists, representatives, scans, stock, users,
)
from services.notification_bus import notification_bus

STARTED_AT = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    logger.info(f"Radiology Lab API started ({settings.environment})")
    yield
    await notification_bus.shutdown()


app = FastAPI(
    title="Radiology Lab API",
    description="Back-office API for a multi-branch radiology lab",
    version="1.0.0",
    lifespan=lifespan
)

# Set up rate limiter
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "Accept", "Origin", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)

# Added last so it wraps every other middleware
app.add_middleware(RequestContextMiddleware)

register_exception_handlers(app)

# Include routers
app.include_router(auth.router)
app.include_router(users.router)
app.include_router(meta.router)
app.include_router(appointments.router)
app.include_router(stock.router)
app.include_router(expenses.router)
app.include_router(audit.router)
app.include_router(patients.router)
app.include_router(doctors.router)
app.include_router(representatives.router)
app.include_router(branches.router)
app.include_router(scans.router)
app.include_router(radiologists.router)
app.include_router(notifications.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to Radiology Lab API"}


@app.get("/health")
def health_check(session: Session = Depends(get_session)):
    database_ok = check_database_health(session)
    body = {
        "status": "success" if database_ok else "error",
        "uptime": round(time.monotonic() - STARTED_AT, 3),
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "database": "ok" if database_ok else "degraded",
    }
    if not database_ok:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=settings.port, reload=not settings.is_production)
