"""
Allocation Schemas
"""
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, model_validator


# ============================================================================
# Store boundary record (normalised external payload)
# ============================================================================

class AllocationRecord(BaseModel):
    """One allocation row after field-name normalisation."""
    sku_id: Optional[int] = None
    sku_code: Optional[str] = None
    location_id: Optional[int] = None
    location_code: Optional[str] = None
    allocated: Optional[int] = Field(None, ge=0)
    target: Optional[int] = Field(None, ge=0)
    on_hand: Optional[int] = Field(None, ge=0)
    in_transit: Optional[int] = Field(None, ge=0)
    safety_stock: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def _require_keys(self):
        if self.sku_id is None and not self.sku_code:
            raise ValueError("allocation record has no SKU reference")
        if self.location_id is None and not self.location_code:
            raise ValueError("allocation record has no location reference")
        return self

    def quantity_fields(self) -> Dict[str, int]:
        return {
            k: v for k, v in self.model_dump(
                include={"allocated", "target", "on_hand", "in_transit", "safety_stock"}
            ).items()
            if v is not None
        }


# ============================================================================
# Requests
# ============================================================================

class AllocationUpdateRequest(BaseModel):
    expected_version: int = Field(..., ge=1, description="Version read by the caller")
    allocated: Optional[int] = Field(None, ge=0)
    target: Optional[int] = Field(None, ge=0)
    on_hand: Optional[int] = Field(None, ge=0)
    in_transit: Optional[int] = Field(None, ge=0)
    safety_stock: Optional[int] = Field(None, ge=0)

    def changed_fields(self) -> Dict[str, int]:
        return self.model_dump(exclude={"expected_version"}, exclude_none=True)


class AllocationImportRequest(BaseModel):
    records: List[Dict[str, Any]] = Field(..., min_length=1)
