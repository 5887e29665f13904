from typing import List, Optional
from pydantic import BaseModel, validator

from atelier.core.slots import MINUTES_PER_DAY, Slot


# =========================================================
# 🔹 SHARED REQUEST SCHEMAS
# =========================================================

class SlotIn(BaseModel):
    day_of_week: int
    start_minute: int
    end_minute: int

    @validator('day_of_week')
    def validate_day_of_week(cls, v):
        if not 0 <= v <= 6:
            raise ValueError('day_of_week must be between 0 (Sunday) and 6 (Saturday)')
        return v

    @validator('start_minute')
    def validate_start_minute(cls, v):
        if not 0 <= v < MINUTES_PER_DAY:
            raise ValueError('start_minute out of range')
        return v

    @validator('end_minute')
    def validate_end_minute(cls, v, values):
        if not 0 < v <= MINUTES_PER_DAY:
            raise ValueError('end_minute out of range')
        start = values.get('start_minute')
        if start is not None and v <= start:
            raise ValueError('end_minute must be after start_minute')
        return v

    def to_slot(self) -> Slot:
        return Slot(self.day_of_week, self.start_minute, self.end_minute)


def to_slots(items: Optional[List[SlotIn]]) -> List[Slot]:
    return [item.to_slot() for item in items or []]
