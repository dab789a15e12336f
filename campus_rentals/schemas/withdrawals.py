from typing import Optional

from pydantic import BaseModel, ConfigDict


class WithdrawalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: int
    method: str
    details: Optional[str] = None
