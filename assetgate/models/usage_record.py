"""
assetgate/models/usage_record.py

UsageRecord: one granted download. Immutable once written.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class UsageRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    asset_id: str
    occurred_at: datetime
    id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
