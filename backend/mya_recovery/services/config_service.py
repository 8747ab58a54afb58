# /mya_recovery/services/config_service.py

import logging

from mya_recovery.config.settings import settings
from mya_recovery.models.domain import RecoveryConfig
from mya_recovery.services.db_service import db_service

logger = logging.getLogger(__name__)


async def load_recovery_config() -> RecoveryConfig:
    """
    Reads the stored recovery configuration. Missing rows or fields fall back
    to the defaults from settings.
    """
    stored = await db_service.get_recovery_config() or {}
    if not stored:
        logger.info("No cart_recovery_config row stored, using defaults from settings")

    values = {
        "enabled": True,
        "whatsapp_enabled": True,
        "delay_minutes": settings.recovery_default_delay_minutes,
        "max_attempts": settings.recovery_default_max_attempts,
    }
    values.update({key: stored[key] for key in values if stored.get(key) is not None})
    return RecoveryConfig(**values)
