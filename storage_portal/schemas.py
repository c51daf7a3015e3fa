from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# Required fields are checked by the services so a missing value reads as a domain error.


class Body(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)


class LoginBody(Body):
    email: str | None = None
    password: str | None = None


class ItemRequestCreate(Body):
    product_code: str | None = None
    total_stock: int = 0
    description: str | None = None
    brand_code: str | None = None
    product_division: str | None = None
    product_category: str | None = None
    unit_of_measure: str | None = None
    condition: str | None = None


class LocationBody(Body):
    location: str | None = None


class ReasonBody(Body):
    reason: str | None = None


class BulkApproveBody(Body):
    request_ids: list[int] = Field(default_factory=list)
    location: str | None = None


class BulkRejectBody(Body):
    request_ids: list[int] = Field(default_factory=list)
    reason: str | None = None


class BorrowLine(Body):
    item_id: int
    quantity: int


class BorrowRequestCreate(Body):
    items: list[BorrowLine] = Field(default_factory=list)
    start_date: datetime | None = None
    end_date: datetime | None = None
    reason: str | None = None


class StageBody(Body):
    stage: str | None = None


class StageReasonBody(Body):
    stage: str | None = None
    reason: str | None = None


class ReturnBody(Body):
    return_condition: str | None = None
    reason: str | None = None
    return_notes: str | None = None


class ReceiveBody(Body):
    notes: str | None = None


class LineOutcome(Body):
    borrow_request_item_id: int
    status: str | None = None
    return_condition: str | None = None
    return_notes: str | None = None
    reason: str | None = None


class CompleteBody(Body):
    items: list[LineOutcome] = Field(default_factory=list)


class LegacyRequestCreate(Body):
    item_size_id: int
    quantity: int = 1
    start_date: datetime | None = None
    end_date: datetime | None = None
    reason: str | None = None


class ClearanceCreate(Body):
    item_id: int
    quantity: int
    reason: str | None = None
    kind: str | None = Field(default=None, alias='type')


class RevertClearanceBody(Body):
    item_id: int
    quantity: int


class RevertSeedingBody(Body):
    reason: str | None = None
    restore_quantity: bool = False


class SkuBody(Body):
    sku: str | None = None
