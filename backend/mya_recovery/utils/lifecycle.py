# /mya_recovery/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from mya_recovery.utils.logging import setup_logging
from mya_recovery.utils.alerting import alerting_service
from mya_recovery.services.db_service import db_service
from mya_recovery.services.whatsapp_service import whatsapp_service

# Startup creates the MongoDB indexes the queue relies on (unique
# session/attempt pairs, unique client ids); shutdown closes HTTP clients
# and the database connection.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info("Application starting up...")
    await db_service.create_indexes()
    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")
    await whatsapp_service.close()
    await alerting_service.cleanup()
    if db_service.client:
        db_service.client.close()
