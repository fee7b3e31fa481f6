"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from datetime import date
from typing import Optional
from pydantic import BaseModel, Field


# Check schemas
class CreateCheckRequest(BaseModel):
    direction: str = Field(..., description="received or issued")
    amount: Decimal = Field(..., ge=0, description="Check amount")
    serial_number: Optional[int] = Field(None, description="Assigned from the checkbook when omitted")
    channel: Optional[str] = Field(None, description="Bookkeeping channel (C1, C2)")
    check_format: str = Field("physical", description="physical or electronic")
    bank_id: Optional[str] = None
    checkbook_id: Optional[str] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    expected_collection_date: Optional[date] = None
    customer_id: Optional[str] = None
    supplier_id: Optional[str] = None
    sale_id: Optional[str] = None
    purchase_id: Optional[str] = None
    payee_name: Optional[str] = Field(None, max_length=120)
    notes: Optional[str] = None


class UpdateCheckRequest(BaseModel):
    channel: Optional[str] = None
    check_format: Optional[str] = None
    bank_id: Optional[str] = None
    serial_number: Optional[int] = None
    amount: Optional[Decimal] = Field(None, ge=0)
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    expected_collection_date: Optional[date] = None
    customer_id: Optional[str] = None
    supplier_id: Optional[str] = None
    sale_id: Optional[str] = None
    purchase_id: Optional[str] = None
    payee_name: Optional[str] = Field(None, max_length=120)
    notes: Optional[str] = None


class TransitionRequest(BaseModel):
    idempotency_key: Optional[str] = Field(
        None, max_length=100, description="Repeats with the same key return the first result"
    )


class DepositRequest(TransitionRequest):
    bank_account_id: str
    deposit_date: Optional[date] = None
    expected_collection_date: Optional[date] = None


class AccreditRequest(TransitionRequest):
    accreditation_date: Optional[date] = None
    bank_account_id: Optional[str] = None


class RejectRequest(TransitionRequest):
    reason: str
    rejection_date: Optional[date] = None


class ApplyToSupplierRequest(TransitionRequest):
    supplier_id: Optional[str] = None
    purchase_id: Optional[str] = None
    applied_on: Optional[date] = None


class DeliverRequest(TransitionRequest):
    supplier_id: Optional[str] = None
    recipient: Optional[str] = None
    delivered_on: Optional[date] = None


class ClearRequest(TransitionRequest):
    clearing_date: Optional[date] = None


class VoidRequest(TransitionRequest):
    reason: str


# Checkbook schemas
class CreateCheckbookRequest(BaseModel):
    bank_account_id: str
    description: str
    range_start: Optional[int] = None
    range_end: Optional[int] = None
    next_number: Optional[int] = None
    state: str = "active"
    length: Optional[int] = Field(None, description="Size of a suggested range when range_end is omitted")


class UpdateCheckbookRequest(BaseModel):
    bank_account_id: Optional[str] = None
    description: Optional[str] = None
    range_start: Optional[int] = None
    range_end: Optional[int] = None
    next_number: Optional[int] = None
    state: Optional[str] = None
