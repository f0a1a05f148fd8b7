"""
Transfer Order Schemas
"""
from datetime import date
from typing import Optional
from pydantic import BaseModel


class TransferCreateRequest(BaseModel):
    sku_id: int
    from_location_id: int
    to_location_id: int
    quantity: int
    required_date: Optional[date] = None
