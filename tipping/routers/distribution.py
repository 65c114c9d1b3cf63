"""
Distribution Groups Router

- GET /restaurants/{id}/distribution-groups - Active groups
- PUT /restaurants/{id}/distribution-groups - Replace the whole set (must sum to 100%)
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel, Field
from decimal import Decimal
import logging

from database.db import get_db
from services.distribution import GroupInput, list_groups, replace_groups
from services.money import ZERO
from services.tip_ledger import get_restaurant

router = APIRouter(prefix="/restaurants/{restaurant_id}/distribution-groups", tags=["Distribution"])
logger = logging.getLogger(__name__)


class GroupsRequest(BaseModel):
    groups: List[GroupInput] = Field(..., min_length=1)


class GroupResponse(BaseModel):
    id: int
    group_name: str
    percentage: Decimal
    phone_number: Optional[str]

    class Config:
        from_attributes = True


class GroupsResponse(BaseModel):
    restaurant_id: int
    groups: List[GroupResponse]
    total_percentage: Decimal


def _response(restaurant_id: int, groups) -> GroupsResponse:
    return GroupsResponse(
        restaurant_id=restaurant_id,
        groups=groups,
        total_percentage=sum((Decimal(g.percentage) for g in groups), ZERO),
    )


@router.get("", response_model=GroupsResponse)
def get_distribution_groups(restaurant_id: int, db: Session = Depends(get_db)):
    get_restaurant(db, restaurant_id)
    return _response(restaurant_id, list_groups(db, restaurant_id))


@router.put("", response_model=GroupsResponse)
def put_distribution_groups(restaurant_id: int, body: GroupsRequest, db: Session = Depends(get_db)):
    """Replace all groups. Validation errors come back with an `errors` list."""
    groups = replace_groups(db, restaurant_id, body.groups)
    db.commit()
    return _response(restaurant_id, groups)
