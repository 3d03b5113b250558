from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
from datetime import datetime


class TransactionKind(str, Enum):
    CHARGE = "CHARGE"
    USE = "USE"


class UserBalance(BaseModel):
    model_config = ConfigDict(frozen=True)

    userId: int = Field(..., gt=0, description="User identifier")
    points: int = Field(..., ge=0, description="Current point balance")
    updatedAt: datetime = Field(..., description="Time of the last balance write")


class TransactionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="History sequence number")
    userId: int = Field(..., gt=0, description="User identifier")
    amount: int = Field(..., gt=0, description="Points charged or used")
    kind: TransactionKind = Field(..., description="Transaction kind")
    timestamp: datetime = Field(..., description="Time the transaction was recorded")


class PointAmountRequest(BaseModel):
    amount: int = Field(..., description="Points to charge or use")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    users_count: int = Field(..., description="Number of users with a stored balance")
    transactions_recorded: int = Field(..., description="Total history records")
    locks_registered: int = Field(..., description="Number of per-user locks created")
