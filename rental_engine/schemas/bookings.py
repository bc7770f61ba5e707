from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class LineItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    targetType: Literal["product", "bundle"]
    targetID: int
    quantity: int = Field(1, ge=1)


class AdditionalServiceDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    amount: int = Field(0, ge=0)


class CreateBookingDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    customerID: int
    startDate: datetime
    endDate: datetime
    promoID: Optional[int] = None
    downPayment: Optional[int] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    items: List[LineItemDto] = []
    additionalServices: List[AdditionalServiceDto] = []


class UpsertLineItemDto(LineItemDto):
    version: Optional[int] = None
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None


class ScheduleUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    startDate: datetime
    endDate: datetime


class PromoUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    promoID: Optional[int] = None


class AdditionalServicesUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    services: List[AdditionalServiceDto] = []


class DownPaymentDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: int


class StatusChangeDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["pending", "paid", "cancelled", "rented", "finished"]


class BulkStatusChangeDto(StatusChangeDto):
    bookingIDs: List[int] = []


class FinishExpiredDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    now: Optional[datetime] = None
