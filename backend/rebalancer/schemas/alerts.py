"""
Alert Schemas
"""
from datetime import date
from typing import Optional, List
from pydantic import BaseModel, Field


class AlertGenerateRequest(BaseModel):
    sku_ids: Optional[List[int]] = None
    as_of: Optional[date] = Field(None, description="Evaluation date for expiry checks")


class ReplenishFromAlertRequest(BaseModel):
    from_location_id: int
    quantity: int
    required_date: Optional[date] = None
