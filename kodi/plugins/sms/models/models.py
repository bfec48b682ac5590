from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


class Provider(str, Enum):
    textsms = "textsms"


ValidStatus = Literal["success", "queue", "failed"]


class SendResult(BaseModel):
    success: bool
    message_id: Optional[str] = Field(None, alias="messageId")
    error: Optional[str] = None

    model_config = {"populate_by_name": True}


class SmsLog(BaseModel):
    """Row written to sms_logs for every outbound attempt"""
    to: str
    message: str
    kind: str = "generic"
    status: ValidStatus
    message_id: Optional[str] = Field(None, alias="messageId")
    error: Optional[str] = None
    provider: str
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    created_at: datetime = Field(alias="createdAt")

    model_config = {"populate_by_name": True}
