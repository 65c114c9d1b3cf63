"""
Tips Router

- POST /restaurants/{id}/tips - Record a tip at checkout (pending)
- POST /tips/{id}/status - Gateway confirmation (completed/failed)
- PUT /restaurants/{id}/commission-rate - Change the rate for future tips
- GET /restaurants/{id}/commission-rate/history - Audit trail of rate changes
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
import logging

from database.db import get_db
from services.tip_ledger import commission_rate_history, record_tip, update_commission_rate, update_tip_status

router = APIRouter(tags=["Tips"])
logger = logging.getLogger(__name__)


class TipCreate(BaseModel):
    amount: Decimal
    tip_type: str = Field(..., pattern=r'^(waiter|restaurant)$')
    payment_method: str = Field(..., pattern=r'^(mpesa|card)$')
    waiter_id: Optional[int] = None
    table_id: Optional[str] = None


class TipStatusUpdate(BaseModel):
    status: str = Field(..., pattern=r'^(processing|completed|failed)$')
    transaction_id: Optional[str] = None


class CommissionRateUpdate(BaseModel):
    commission_rate: Decimal
    changed_by: Optional[str] = Field(None, max_length=100)
    reason: Optional[str] = Field(None, max_length=255)


class CommissionRateChangeResponse(BaseModel):
    id: int
    restaurant_id: int
    old_rate: Decimal
    new_rate: Decimal
    changed_by: Optional[str]
    reason: Optional[str]
    changed_at: datetime

    class Config:
        from_attributes = True


class TipResponse(BaseModel):
    id: int
    restaurant_id: int
    waiter_id: Optional[int]
    table_id: Optional[str]
    amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    net_amount: Decimal
    tip_type: str
    payment_method: str
    payment_status: str
    transaction_id: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


@router.post("/restaurants/{restaurant_id}/tips", response_model=TipResponse, status_code=201)
def create_tip(restaurant_id: int, body: TipCreate, db: Session = Depends(get_db)):
    tip = record_tip(
        db,
        restaurant_id=restaurant_id,
        amount=body.amount,
        tip_type=body.tip_type,
        payment_method=body.payment_method,
        waiter_id=body.waiter_id,
        table_id=body.table_id,
    )
    db.commit()
    return tip


@router.post("/tips/{tip_id}/status", response_model=TipResponse)
def set_tip_status(tip_id: int, body: TipStatusUpdate, db: Session = Depends(get_db)):
    tip = update_tip_status(db, tip_id, body.status, body.transaction_id)
    db.commit()
    return tip


@router.put("/restaurants/{restaurant_id}/commission-rate")
def set_commission_rate(restaurant_id: int, body: CommissionRateUpdate, db: Session = Depends(get_db)):
    restaurant = update_commission_rate(
        db, restaurant_id, body.commission_rate, changed_by=body.changed_by, reason=body.reason
    )
    db.commit()
    return {"restaurant_id": restaurant.id, "commission_rate": restaurant.commission_rate}


@router.get("/restaurants/{restaurant_id}/commission-rate/history", response_model=List[CommissionRateChangeResponse])
def get_commission_rate_history(restaurant_id: int, db: Session = Depends(get_db)):
    return commission_rate_history(db, restaurant_id)
