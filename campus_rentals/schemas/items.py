from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ItemCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    category: str = Field(min_length=1, max_length=100)
    pricePerDay: int = Field(gt=0)
    imageUrl: Optional[str] = None
    condition: Optional[str] = None
    location: Optional[str] = None


class ItemUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, min_length=1)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    pricePerDay: Optional[int] = Field(default=None, gt=0)
    imageUrl: Optional[str] = None
    isAvailable: Optional[bool] = None
    condition: Optional[str] = None
    location: Optional[str] = None
