# /mya_recovery/models/domain.py

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Domain models for the cart recovery pipeline. Documents read from MongoDB
# are converted with DatabaseService._serialize_doc, which turns "_id" into
# "id" and ObjectIds into strings before validation.


class CartStatus(str, Enum):
    ACTIVE = "active"
    ABANDONED = "abandoned"
    COMPLETED = "completed"
    CONVERTED = "converted"
    EXPIRED = "expired"


TERMINAL_CART_STATUSES = frozenset({CartStatus.COMPLETED.value, CartStatus.CONVERTED.value, CartStatus.EXPIRED.value})
OPEN_CART_STATUSES = frozenset({CartStatus.ACTIVE.value, CartStatus.ABANDONED.value})


class ScheduleStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    CONVERTED = "converted"


class RecoveryMethod(str, Enum):
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class CartSession(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str
    session_id: str
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    user_whatsapp: Optional[str] = None
    amount: float = 0.0
    frequency: Optional[str] = None
    plan_id: Optional[str] = None
    payment_method: Optional[str] = None
    status: CartStatus = CartStatus.ACTIVE
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    converted_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None


class RecoverySchedule(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str
    cart_session_id: str
    attempt_number: int = Field(..., ge=0)
    scheduled_at: datetime
    status: ScheduleStatus = ScheduleStatus.PENDING
    created_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    requeue_count: int = 0

    @property
    def is_abandonment_check(self) -> bool:
        return self.attempt_number == 0


class RecoveryAttempt(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str
    cart_session_id: str
    attempt_number: int
    method: str = RecoveryMethod.WHATSAPP.value
    status: AttemptStatus = AttemptStatus.PENDING
    message_content: Optional[str] = None
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    external_message_id: Optional[str] = None


class RecoveryConfig(BaseModel):
    """
    Pipeline configuration. Loaded once per drain and passed to every
    handler; the pipeline never writes it.
    """
    enabled: bool = True
    whatsapp_enabled: bool = True
    delay_minutes: int = Field(default=30, ge=1)
    max_attempts: int = Field(default=3, ge=1)

    @property
    def dispatch_enabled(self) -> bool:
        return self.enabled and self.whatsapp_enabled


class RecoveryTemplate(BaseModel):
    id: Optional[str] = None
    name: str
    type: str = RecoveryMethod.WHATSAPP.value
    attempt_number: Optional[int] = None
    content: str
    is_active: bool = True


class ScheduleResult(BaseModel):
    """Outcome of one schedule within a drain."""
    schedule_id: str
    session_id: Optional[str] = None
    attempt_number: int
    status: str  # success | skipped | claimed_elsewhere | error
    note: Optional[str] = None
    error: Optional[str] = None


class ApiClient(BaseModel):
    client_id: str
    name: str
    scopes: List[str] = Field(default_factory=list)
    is_active: bool = True


class HandlerOutcome(BaseModel):
    """What a schedule handler reports back to the drain."""
    skipped: bool = False
    note: Optional[str] = None
