from typing import Optional

from pydantic import BaseModel, ConfigDict

from .dates import CalendarDate


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemId: int
    startDate: CalendarDate
    endDate: CalendarDate


class RentalStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str


class UnavailabilityBlockRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    startDate: CalendarDate
    endDate: CalendarDate


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalId: int
