import logging
from decimal import Decimal

from sqlalchemy import func, select

from .errors import NotFound, StateConflict, ValidationError
from .models import FINE_STATUSES, Fine
from .validation import require_choice

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# fine types that block a new checkout while unpaid
LATE_FINE_TYPES = ("overdue", "late_return")


def late_fee(overdue_days, daily_rate):
    """Late-return charge: whole days past due times the daily rate."""
    days = max(0, int(overdue_days))
    return (Decimal(days) * Decimal(daily_rate)).quantize(CENTS)


def fine_to_dict(fine):
    return {
        "id": fine.id,
        "borrowing_id": fine.borrowing_id,
        "member_id": fine.member_id,
        "fine_type": fine.fine_type,
        "amount": float(fine.amount),
        "assessed_date": fine.assessed_date.isoformat(),
        "paid_date": fine.paid_date.isoformat() if fine.paid_date else None,
        "status": fine.status,
        "description": fine.description,
    }


class FineLedger:
    def __init__(self, session, config):
        self.session = session
        self.config = config

    def _add(self, txn, fine_type, amount, assessed_date, description):
        fine = Fine(
            borrowing_id=txn.id,
            member_id=txn.member_id,
            fine_type=fine_type,
            amount=amount,
            assessed_date=assessed_date,
            status="unpaid",
            description=description,
        )
        self.session.add(fine)
        self.session.flush()
        logger.info(
            "Assessed %s fine %s of %s for borrowing %s",
            fine_type,
            fine.id,
            amount,
            txn.id,
        )
        return fine

    def assess_late_return(self, txn, returned_date):
        days = (returned_date - txn.due_date).days
        if days <= 0:
            return None
        amount = late_fee(days, self.config.DAILY_FINE_RATE)
        return self._add(
            txn,
            "late_return",
            amount,
            returned_date,
            f"Returned {days} day(s) late",
        )

    def assess_lost(self, txn, today):
        amount = Decimal(self.config.LOST_BOOK_FEE).quantize(CENTS)
        return self._add(txn, "lost", amount, today, "Replacement fee for lost copy")

    def get(self, fine_id):
        fine = self.session.get(Fine, fine_id)
        if fine is None:
            raise NotFound("fine not found", fine_id=fine_id)
        return fine

    def list_member_fines(self, member_id, status=None):
        q = select(Fine).where(Fine.member_id == member_id)
        if status:
            require_choice(status, FINE_STATUSES, "status")
            q = q.where(Fine.status == status)
        return self.session.execute(q.order_by(Fine.assessed_date, Fine.id)).scalars().all()

    def unpaid_total(self, member_id, fine_types=None):
        q = select(func.coalesce(func.sum(Fine.amount), 0)).where(
            Fine.member_id == member_id, Fine.status == "unpaid"
        )
        if fine_types:
            q = q.where(Fine.fine_type.in_(fine_types))
        return Decimal(str(self.session.execute(q).scalar())).quantize(CENTS)

    def has_unpaid(self, member_id, fine_types):
        return self.session.execute(
            select(Fine.id)
            .where(
                Fine.member_id == member_id,
                Fine.status == "unpaid",
                Fine.fine_type.in_(fine_types),
            )
            .limit(1)
        ).first() is not None

    def pay(self, fine_id, paid_date):
        fine = self.get(fine_id)
        if fine.status not in ("unpaid", "disputed"):
            raise StateConflict(f"fine is already {fine.status}", fine_id=fine_id)
        if paid_date < fine.assessed_date:
            raise ValidationError("paid_date cannot be before assessed_date")
        fine.status = "paid"
        fine.paid_date = paid_date
        self.session.flush()
        logger.info("Fine %s paid on %s", fine_id, paid_date)
        return fine

    def waive(self, fine_id):
        fine = self.get(fine_id)
        if fine.status not in ("unpaid", "disputed"):
            raise StateConflict(f"fine is already {fine.status}", fine_id=fine_id)
        fine.status = "waived"
        self.session.flush()
        logger.info("Fine %s waived", fine_id)
        return fine

    def dispute(self, fine_id):
        fine = self.get(fine_id)
        if fine.status != "unpaid":
            raise StateConflict(f"fine is already {fine.status}", fine_id=fine_id)
        fine.status = "disputed"
        self.session.flush()
        return fine
