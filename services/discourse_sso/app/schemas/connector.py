from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class DiscourseUserRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    discourse_id: int
    user_record: dict[str, Any]
    last_update: datetime
    last_event: str
    last_event_id: int
