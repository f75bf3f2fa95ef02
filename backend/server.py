from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
from datetime import datetime
import os
import logging

from database import client, db
from billing_routes import billing_router
from clause_routes import clause_router
from payment_routes import payment_router
from core.batch_lifecycle import BatchLifecycleManager
from core.clause_service import ClauseService
from core.idempotency import create_idempotency_indexes
from core.payment_service import PaymentService

# Configure logging
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create the main app
app = FastAPI(
    title="Waste Management Billing - Batch Pipeline",
    version="1.0.0",
    description="Billing batches, agreement clause ordering and payment allocation"
)

api_router = APIRouter(prefix="/api/v1")


@api_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow(),
        "version": app.version
    }


app.include_router(api_router)
app.include_router(billing_router)
app.include_router(clause_router)
app.include_router(payment_router)

# CORS middleware
cors_origins = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def create_indexes():
    await BatchLifecycleManager(client, db).create_indexes()
    await ClauseService(client, db).create_indexes()
    await PaymentService(client, db).create_indexes()
    await create_idempotency_indexes(db)
    logger.info("Indexes ensured")


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
