from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CartItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    targetType: Literal["product", "bundle"]
    targetID: int
    startDate: datetime
    endDate: datetime
    quantity: int = Field(1, ge=1)
    reference: Optional[str] = None


class CartAvailabilityRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    items: List[CartItemDto] = []
