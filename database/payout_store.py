"""
Payout Record Store

Query interface over the payouts table: point lookup, filtered listing,
bulk insert, conditional update and delete-while-pending.

conditional_update() issues one UPDATE per id filtered on the expected
status, so two sessions claiming the same row can't both succeed; the
caller owns the transaction (commit/rollback).
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.util import identity_key

from database.models import Payout, PayoutStatus
from services.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class PayoutStore:
    """Thin repository over Payout rows bound to one session."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, payout_id: int) -> Payout:
        payout = self.db.get(Payout, payout_id)
        if not payout:
            raise NotFoundError(f"Payout {payout_id} not found", details={"payout_id": payout_id})
        return payout

    def find(self, payout_id: int) -> Optional[Payout]:
        return self.db.get(Payout, payout_id)

    def get_many(self, payout_ids: Iterable[int]) -> Dict[int, Payout]:
        ids = list(payout_ids)
        if not ids:
            return {}
        rows = self.db.query(Payout).filter(Payout.id.in_(ids)).all()
        return {p.id: p for p in rows}

    def list(
        self,
        restaurant_id: Optional[int] = None,
        month: Optional[str] = None,
        status: Optional[str] = None,
        payout_type: Optional[str] = None,
        has_reference: bool = False,
        order_by: str = "created_at",
        descending: bool = False,
    ) -> List[Payout]:
        query = self.db.query(Payout)
        if restaurant_id is not None:
            query = query.filter(Payout.restaurant_id == restaurant_id)
        if month is not None:
            query = query.filter(Payout.payout_month == month)
        if status is not None:
            query = query.filter(Payout.status == status)
        if payout_type is not None:
            query = query.filter(Payout.payout_type == payout_type)
        if has_reference:
            query = query.filter(Payout.transaction_reference.isnot(None))

        column = getattr(Payout, order_by)
        query = query.order_by(column.desc() if descending else column.asc(), Payout.id.asc())
        return query.all()

    def count(self, restaurant_id: int, month: str) -> int:
        return (
            self.db.query(Payout)
            .filter(Payout.restaurant_id == restaurant_id, Payout.payout_month == month)
            .count()
        )

    def find_by_reference(self, reference: str) -> Optional[Payout]:
        return self.db.query(Payout).filter(Payout.transaction_reference == reference).first()

    def insert_many(self, payouts: List[Payout]) -> List[Payout]:
        self.db.add_all(payouts)
        self.db.flush()
        return payouts

    def conditional_update(self, payout_ids: Iterable[int], expected_status: str, patch: Dict[str, Any]) -> List[int]:
        """
        Apply `patch` to each payout whose status is still `expected_status`.

        Returns:
            The ids that were actually updated, in input order
        """
        values = dict(patch)
        values.setdefault("updated_at", datetime.utcnow())

        updated = []
        for payout_id in payout_ids:
            result = self.db.execute(
                update(Payout)
                .where(Payout.id == payout_id, Payout.status == expected_status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                updated.append(payout_id)

        # Loaded instances must not keep serving the pre-update state
        for payout_id in updated:
            instance = self.db.identity_map.get(identity_key(Payout, payout_id))
            if instance is not None:
                self.db.expire(instance)
        return updated

    def delete_pending(self, payout_id: int) -> None:
        payout = self.get(payout_id)
        if payout.status != PayoutStatus.PENDING.value:
            raise ConflictError(
                "Only pending payouts can be deleted",
                details={"payout_id": payout_id, "current_status": payout.status},
            )
        self.db.delete(payout)
        self.db.flush()
        logger.info(f"Payout {payout_id} deleted")
