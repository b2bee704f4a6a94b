from enum import Enum
from pydantic import BaseModel
from datetime import datetime, timezone
from typing import List, Optional
import uuid


class EventType(str, Enum):
    INDEX_SUBMITTED = "index_submitted"
    INDEX_FAILED = "index_failed"
    INDEX_COMPLETED = "index_completed"
    INDEX_TIMED_OUT = "index_timed_out"
    DE_INDEX_COMPLETED = "de_index_completed"
    DE_INDEX_FAILED = "de_index_failed"
    STATUS_CHANGED = "status_changed"


class IndexingEvent(BaseModel):
    id: str
    type: EventType
    timestamp: datetime
    job_id: str
    resource_ids: List[str]
    data: dict
    message: Optional[str] = None

    @classmethod
    def create(
        cls,
        event_type: EventType,
        job_id: str,
        resource_ids: List[str],
        data: Optional[dict] = None,
        message: Optional[str] = None
    ) -> "IndexingEvent":
        return cls(
            id=str(uuid.uuid4()),
            type=event_type,
            timestamp=datetime.now(timezone.utc),
            job_id=job_id,
            resource_ids=list(resource_ids),
            data=data or {},
            message=message
        )
