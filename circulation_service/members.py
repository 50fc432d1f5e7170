"""Member store: member records, status and checkout eligibility."""

import logging
from decimal import Decimal

from sqlalchemy import or_, select

from .errors import NotFound, StateConflict, ValidationError
from .fines import LATE_FINE_TYPES, FineLedger
from .models import MEMBER_STATUSES, Member
from .transactions import open_transactions, transaction_to_dict
from .validation import (
    check_max_books,
    clean_email,
    optional_text,
    parse_date,
    require_choice,
    require_text,
)

logger = logging.getLogger(__name__)


def member_to_dict(member):
    return {
        "id": member.id,
        "name": member.name,
        "email": member.email,
        "phone": member.phone,
        "address": member.address,
        "status": member.status,
        "max_books": member.max_books,
        "member_since": member.member_since.isoformat() if member.member_since else None,
        "updated_at": member.updated_at.isoformat() if member.updated_at else None,
    }


class MemberStore:
    def __init__(self, session, config):
        self.session = session
        self.config = config

    def get_member(self, member_id):
        member = self.session.get(Member, member_id)
        if member is None:
            raise NotFound("member not found", member_id=member_id)
        return member

    def _ensure_email_free(self, email, exclude_id=None):
        q = select(Member.id).where(Member.email == email)
        if exclude_id is not None:
            q = q.where(Member.id != exclude_id)
        if self.session.execute(q).first():
            raise StateConflict("email address is already in use", email=email)

    def create_member(self, data):
        email = clean_email(data.get("email"))
        self._ensure_email_free(email)
        max_books = data.get("max_books", self.config.DEFAULT_MAX_BOOKS)
        member = Member(
            name=require_text(data, "name"),
            email=email,
            phone=optional_text(data, "phone", 50),
            address=optional_text(data, "address", 2000),
            status="active",
            max_books=check_max_books(max_books),
        )
        if data.get("member_since") is not None:
            member.member_since = parse_date(data["member_since"], "member_since")
        self.session.add(member)
        self.session.flush()
        logger.info("Created member %s <%s>", member.id, member.email)
        return member

    def update_member(self, member_id, data):
        member = self.get_member(member_id)
        changed = False
        if "name" in data:
            member.name = require_text(data, "name")
            changed = True
        if "email" in data:
            email = clean_email(data.get("email"))
            self._ensure_email_free(email, exclude_id=member_id)
            member.email = email
            changed = True
        if "phone" in data:
            member.phone = optional_text(data, "phone", 50)
            changed = True
        if "address" in data:
            member.address = optional_text(data, "address", 2000)
            changed = True
        if "max_books" in data:
            member.max_books = check_max_books(data["max_books"])
            changed = True
        if "status" in data:
            member.status = require_choice(data["status"], MEMBER_STATUSES, "status")
            changed = True
        if not changed:
            raise ValidationError("no fields to update")
        self.session.flush()
        return member

    def set_status(self, member_id, status):
        require_choice(status, MEMBER_STATUSES, "status")
        member = self.get_member(member_id)
        if member.status != status:
            logger.info("Member %s status %s -> %s", member_id, member.status, status)
            member.status = status
            self.session.flush()
        return member

    def delete_member(self, member_id):
        member = self.get_member(member_id)
        blocking = [t.id for t in open_transactions(self.session, member_id=member_id)]
        if blocking:
            raise StateConflict(
                "member has books on loan",
                member_id=member_id,
                blocking_transaction_ids=sorted(blocking),
            )
        self.session.delete(member)
        self.session.flush()
        logger.info("Deleted member %s", member_id)

    def search_members(self, query=None, status=None):
        q = select(Member)
        if query and query.strip():
            pattern = f"%{query.strip()}%"
            q = q.where(
                or_(
                    Member.name.ilike(pattern),
                    Member.email.ilike(pattern),
                    Member.phone.ilike(pattern),
                )
            )
        if status:
            q = q.where(Member.status == require_choice(status, MEMBER_STATUSES, "status"))
        return self.session.execute(q.order_by(Member.name, Member.id)).scalars().all()

    # ----------------- eligibility -----------------

    def _fine_blocks(self, member_id):
        ledger = FineLedger(self.session, self.config)
        threshold = self.config.FINE_BLOCK_THRESHOLD
        if threshold is None:
            return ledger.has_unpaid(member_id, LATE_FINE_TYPES)
        return ledger.unpaid_total(member_id) > Decimal(threshold)

    def is_eligible(self, member_id):
        """Return ``{"eligible": bool, "reasons": [...]}`` for a new checkout."""
        member = self.get_member(member_id)
        reasons = []
        if member.status != "active":
            reasons.append(f"member {member.status}")
        current = len(open_transactions(self.session, member_id=member_id))
        if current >= member.max_books:
            reasons.append("at borrowing limit")
        if self._fine_blocks(member_id):
            reasons.append("has unpaid fine")
        return {"eligible": not reasons, "reasons": reasons}

    def borrowing_status(self, member_id, today):
        member = self.get_member(member_id)
        current = open_transactions(self.session, member_id=member_id)
        eligibility = self.is_eligible(member_id)
        return {
            "member_id": member.id,
            "current_borrowed_count": len(current),
            "max_books": member.max_books,
            "overdue_count": sum(
                1 for t in current if t.status == "overdue" or t.due_date < today
            ),
            "can_borrow": eligibility["eligible"],
            "reasons": eligibility["reasons"],
            "active_transactions": [
                transaction_to_dict(t, today, self.config.MAX_RENEWALS) for t in current
            ],
        }
