from datetime import date, datetime
from typing import Annotated, Any

from pydantic import BeforeValidator


def _coerce_calendar_date(value: Any) -> Any:
    # Browsers post full ISO timestamps; rentals are day-granular.
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and "T" in value:
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        return datetime.fromisoformat(raw).date()
    return value


CalendarDate = Annotated[date, BeforeValidator(_coerce_calendar_date)]
