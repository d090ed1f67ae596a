from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
import os
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Load environment variables from .env file FIRST
load_dotenv()

from database import create_db_and_tables
import models  # Import models to register them with SQLModel
from routers import inventory, prescriptions, billing, notifications, scheduled_tasks
from middleware.activity_logger import ActivityLoggingMiddleware
from services.errors import PharmacyError
from services.scheduler import start_scheduler, stop_scheduler
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "false").lower() == "true"

@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    if ENABLE_SCHEDULER:
        start_scheduler()
    yield
    if ENABLE_SCHEDULER:
        await stop_scheduler()

app = FastAPI(
    title="PharmaFlow API",
    description="Prescription, billing, inventory and alerting core for pharmacy management",
    version="0.1.0",
    lifespan=lifespan
)

# Set up rate limiter (payment endpoints share the billing router's limiter)
app.state.limiter = billing.limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

@app.exception_handler(PharmacyError)
async def pharmacy_error_handler(request: Request, exc: PharmacyError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# CORS configuration
origins = [
    "http://localhost:3000",  # Development frontend
    "http://localhost:8000",  # Development API
    os.getenv("FRONTEND_URL", "http://localhost:3000"),  # Production frontend from env
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "Accept", "Origin"],
)

app.add_middleware(ActivityLoggingMiddleware)

# Include routers
app.include_router(inventory.router)
app.include_router(prescriptions.router)
app.include_router(billing.router)
app.include_router(notifications.router)
app.include_router(scheduled_tasks.router)

@app.get("/")
def read_root():
    return {"message": "Welcome to PharmaFlow API"}

@app.get("/health")
def health_check():
    return {"status": "healthy"}
