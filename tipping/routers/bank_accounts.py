"""
Bank Accounts Router

Destinations for distribution-group bank payouts.

Endpoints:
- GET /restaurants/{id}/bank-accounts - List accounts
- POST /restaurants/{id}/bank-accounts - Register (or replace) a group's account
- DELETE /restaurants/{id}/bank-accounts/{account_id} - Deactivate an account
- POST /banks/validate - Resolve an account with the bank provider
- GET /banks - Supported banks
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
import logging

from database.db import get_db
from services.distribution import (
    BankAccountInput, deactivate_bank_account, list_bank_accounts, register_bank_account
)
from services.tip_ledger import get_restaurant
from services.transfers.base import BankAccountDetails, BankTransferProvider, DestinationCheck
from tipping.dependencies import get_bank_provider

router = APIRouter(tags=["Bank Accounts"])
logger = logging.getLogger(__name__)


class BankAccountResponse(BaseModel):
    id: int
    restaurant_id: int
    group_name: str
    account_name: str
    account_number: str
    bank_name: str
    bank_code: str
    branch_code: Optional[str]
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class ValidateAccountRequest(BaseModel):
    account_number: str = Field(..., min_length=8)
    bank_code: str = Field(..., min_length=3)
    account_name: Optional[str] = None


@router.get("/restaurants/{restaurant_id}/bank-accounts", response_model=List[BankAccountResponse])
def get_bank_accounts(restaurant_id: int, db: Session = Depends(get_db)):
    get_restaurant(db, restaurant_id)
    return list_bank_accounts(db, restaurant_id)


@router.post("/restaurants/{restaurant_id}/bank-accounts", response_model=BankAccountResponse, status_code=201)
def create_bank_account(restaurant_id: int, body: BankAccountInput, db: Session = Depends(get_db)):
    account = register_bank_account(db, restaurant_id, body)
    db.commit()
    return account


@router.delete("/restaurants/{restaurant_id}/bank-accounts/{account_id}", response_model=BankAccountResponse)
def delete_bank_account(restaurant_id: int, account_id: int, db: Session = Depends(get_db)):
    account = deactivate_bank_account(db, restaurant_id, account_id)
    db.commit()
    return account


@router.post("/banks/validate", response_model=DestinationCheck)
def validate_bank_account(body: ValidateAccountRequest, provider: BankTransferProvider = Depends(get_bank_provider)):
    """Check an account with the configured bank provider before registering it."""
    return provider.validate_destination(BankAccountDetails(
        account_number=body.account_number,
        bank_code=body.bank_code,
        account_name=body.account_name or "",
    ))


@router.get("/banks")
def get_banks(provider: BankTransferProvider = Depends(get_bank_provider)):
    return {"provider": provider.name, "banks": provider.list_banks()}
