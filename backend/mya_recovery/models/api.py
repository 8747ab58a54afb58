# /mya_recovery/models/api.py

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from mya_recovery.models.domain import AttemptStatus, CartStatus, RecoveryMethod

# Request and response bodies for the cart recovery HTTP API. External
# callers send camelCase keys; snake_case is accepted as well.


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TrackSessionRequest(CamelModel):
    action: Optional[str] = None
    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=128)
    plan_id: Optional[str] = Field(default=None, alias="planId")
    frequency: Optional[str] = None
    amount: Optional[float] = Field(default=None, ge=0)
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    user_email: Optional[str] = Field(default=None, alias="userEmail", max_length=255)
    user_whatsapp: Optional[str] = Field(default=None, alias="userWhatsapp", max_length=32)
    user_name: Optional[str] = Field(default=None, alias="userName", max_length=255)

    def session_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"action"}, exclude_none=True)


class UpdateSessionRequest(CamelModel):
    session_id: str = Field(..., alias="sessionId", min_length=1)
    status: CartStatus
    metadata: Optional[Dict[str, Any]] = None


class RecordAttemptRequest(CamelModel):
    session_id: str = Field(..., alias="sessionId", min_length=1)
    attempt_number: int = Field(..., alias="attemptNumber", ge=1)
    method: RecoveryMethod
    status: AttemptStatus
    message_content: Optional[str] = Field(default=None, alias="messageContent")
    message_id: Optional[str] = Field(default=None, alias="messageId")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")


class MarkConvertedRequest(CamelModel):
    user_email: Optional[str] = Field(default=None, alias="userEmail")
    user_whatsapp: Optional[str] = Field(default=None, alias="userWhatsapp")
    user_id: Optional[str] = Field(default=None, alias="userId")

    @model_validator(mode="after")
    def require_identifier(self):
        if not (self.user_email or self.user_whatsapp or self.user_id):
            raise ValueError("userEmail, userWhatsapp, or userId is required")
        return self


class Pagination(BaseModel):
    limit: int
    offset: int
    has_more: bool


class AbandonedListResponse(BaseModel):
    success: bool = True
    data: List[Dict[str, Any]]
    count: int
    total_count: int
    pagination: Pagination
    filters: Dict[str, Any]


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
