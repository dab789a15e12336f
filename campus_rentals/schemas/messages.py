from typing import Optional

from pydantic import BaseModel, ConfigDict

from .dates import CalendarDate


class MessageCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    receiverId: int
    content: str
    rentalId: Optional[int] = None
    itemId: Optional[int] = None
    offerPrice: Optional[int] = None
    startDate: Optional[CalendarDate] = None
    endDate: Optional[CalendarDate] = None
