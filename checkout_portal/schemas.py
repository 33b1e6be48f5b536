from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReservationLineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemId: int
    quantity: int = Field(ge=1)
    fromDate: date
    toDate: date


class SubmitReservationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    requesterName: str
    requesterEmail: str
    requesterPhone: Optional[str] = None
    purpose: Optional[str] = None
    items: List[ReservationLineDto] = []


class StatusUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    message: Optional[str] = None


class PickupScheduleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    pickupDate: Optional[date] = None
    pickupTime: Optional[str] = None
    pickupLocation: Optional[str] = None


class MessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: str = ""


class DirectCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemId: int
    checkedOutBy: str
    fromDate: date
    toDate: date
    notes: Optional[str] = None
