"""Request bodies for the dashboard API."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from salesbot.constants import DurationType


class PaymentCreateRequest(BaseModel):
    principal_id: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    plan: str = "Standard"
    amount: Decimal = Field(..., gt=0)
    method: str = "PIX"


class ManualSaleRequest(BaseModel):
    principal_id: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    plan: str = "Standard"
    amount: Decimal = Field(..., gt=0)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class UserAddRequest(BaseModel):
    principal_id: str = Field(..., min_length=1)
    display_name: str = "Authorized User"


class MessageRequest(BaseModel):
    principal_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1, max_length=2000)


class RestoreRequest(BaseModel):
    name: str = Field(..., min_length=1)
    confirm: bool = False


class KeyIssueRequest(BaseModel):
    plan_type: Optional[str] = None
    duration_type: DurationType = DurationType.WEEKLY


class KeyRedeemRequest(BaseModel):
    consumer_id: str = Field(..., min_length=1)


class KeysLimitRequest(BaseModel):
    limit: int = Field(..., ge=0)


class MemberJoinRequest(BaseModel):
    principal_id: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    joined_at: Optional[datetime] = None
    account_created_at: Optional[datetime] = None
    guild_id: Optional[str] = None
    guild_name: Optional[str] = None
