"""Circulation engine: the borrowing state machine.

    active  --checkin-->   returned  (+ late_return fine when past due)
    active  --sweep---->   overdue
    overdue --checkin-->   returned  (+ late_return fine)
    active/overdue --mark_lost--> lost (+ lost fine)

returned and lost are terminal. Every public operation runs in its own
session and commits once; raising before the commit leaves nothing behind.
Status writes are compare-and-set updates on the status the row was read
with, so a concurrent writer makes the loser fail instead of both winning.
"""

import logging
from collections import namedtuple
from datetime import date, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .catalog import CatalogStore
from .errors import EligibilityError, NotFound, StateConflict, ValidationError
from .fines import FineLedger, fine_to_dict
from .members import MemberStore
from .models import BORROWING_STATUSES, OPEN_BORROWING_STATUSES, BorrowingTransaction
from .transactions import RENEWAL_CAP, open_transactions, transaction_to_dict
from .validation import parse_date, require_choice

logger = logging.getLogger(__name__)

SweepResult = namedtuple("SweepResult", ["transitioned", "skipped"])


def _append_note(existing, note):
    if not note:
        return existing
    if not existing:
        return note
    return f"{existing}\n{note}"


class CirculationEngine:
    def __init__(self, session_factory, config, clock=date.today, has_waiting_reservation=None):
        self.Session = session_factory
        self.config = config
        self.clock = clock
        # optional hook: book_id -> bool, blocks renewal while someone waits
        self.has_waiting_reservation = has_waiting_reservation

    @property
    def max_renewals(self):
        return min(self.config.MAX_RENEWALS, RENEWAL_CAP)

    def _today(self, today):
        today = parse_date(today, "today")
        return today if today is not None else self.clock()

    def _describe(self, txn, today):
        return transaction_to_dict(txn, today, self.max_renewals)

    @staticmethod
    def _get_transaction(session, transaction_id, for_update=False):
        q = select(BorrowingTransaction).where(BorrowingTransaction.id == transaction_id)
        if for_update:
            q = q.with_for_update()
        txn = session.execute(q).scalar_one_or_none()
        if txn is None:
            raise NotFound("transaction not found", transaction_id=transaction_id)
        return txn

    @staticmethod
    def _swap_status(session, txn, new_status, **values):
        """Guarded write: only applies if the row still has the status we read."""
        result = session.execute(
            update(BorrowingTransaction)
            .where(
                BorrowingTransaction.id == txn.id,
                BorrowingTransaction.status == txn.status,
                BorrowingTransaction.renewal_count == txn.renewal_count,
            )
            .values(status=new_status, updated_at=datetime.utcnow(), **values)
        )
        if result.rowcount != 1:
            raise StateConflict(
                "transaction changed concurrently", transaction_id=txn.id
            )

    # ----------------- checkout -----------------

    def checkout(self, member_id, copy_id, due_date=None, notes=None, today=None):
        today = self._today(today)
        due_date = parse_date(due_date, "due_date")

        session = self.Session()
        try:
            members = MemberStore(session, self.config)
            catalog = CatalogStore(session)

            eligibility = members.is_eligible(member_id)
            if not eligibility["eligible"]:
                logger.info(
                    "Checkout refused for member %s: %s",
                    member_id,
                    ", ".join(eligibility["reasons"]),
                )
                raise EligibilityError(eligibility["reasons"])

            copy = catalog.get_copy(copy_id, for_update=True)
            if copy.status != "available":
                raise StateConflict(
                    "copy not available", copy_id=copy_id, copy_status=copy.status
                )

            if due_date is None:
                due_date = today + timedelta(days=self.config.LOAN_PERIOD_DAYS)
            elif due_date < today:
                raise ValidationError("due_date cannot be before the borrowed date")

            try:
                catalog.set_copy_status(copy_id, "borrowed")
            except StateConflict as exc:
                raise StateConflict("copy not available", copy_id=copy_id) from exc

            txn = BorrowingTransaction(
                member_id=member_id,
                book_copy_id=copy_id,
                borrowed_date=today,
                due_date=due_date,
                renewal_count=0,
                status="active",
                notes=notes or None,
            )
            session.add(txn)
            try:
                session.flush()
            except IntegrityError as exc:
                # another open loan already holds this copy
                raise StateConflict("copy not available", copy_id=copy_id) from exc

            # a concurrent checkout for another copy may have passed eligibility too
            open_count = len(open_transactions(session, member_id=member_id))
            if open_count > members.get_member(member_id).max_books:
                logger.info("Checkout for member %s lost a race for the last slot", member_id)
                raise EligibilityError(["at borrowing limit"])

            result = self._describe(txn, today)
            session.commit()
            logger.info(
                "Checked out copy %s to member %s (transaction %s, due %s)",
                copy_id,
                member_id,
                result["id"],
                result["due_date"],
            )
            return result
        finally:
            session.close()

    # ----------------- checkin -----------------

    def checkin(self, transaction_id, returned_date=None, notes=None, today=None):
        today = self._today(today)
        returned_date = parse_date(returned_date, "returned_date") or today

        session = self.Session()
        try:
            txn = self._get_transaction(session, transaction_id, for_update=True)
            if txn.status not in OPEN_BORROWING_STATUSES:
                raise StateConflict(
                    f"transaction already {txn.status}", transaction_id=transaction_id
                )
            if returned_date < txn.borrowed_date:
                raise ValidationError("returned_date cannot be before borrowed_date")

            self._swap_status(
                session,
                txn,
                "returned",
                returned_date=returned_date,
                notes=_append_note(txn.notes, notes),
            )
            CatalogStore(session).set_copy_status(txn.book_copy_id, "available")
            fine = FineLedger(session, self.config).assess_late_return(txn, returned_date)

            result = self._describe(txn, today)
            result["fine"] = fine_to_dict(fine) if fine else None
            session.commit()
            logger.info(
                "Checked in transaction %s on %s%s",
                transaction_id,
                returned_date,
                " (late)" if fine else "",
            )
            return result
        finally:
            session.close()

    # ----------------- renewal -----------------

    def renew(self, transaction_id, today=None):
        today = self._today(today)

        session = self.Session()
        try:
            txn = self._get_transaction(session, transaction_id, for_update=True)
            if txn.status not in OPEN_BORROWING_STATUSES:
                raise StateConflict(
                    f"cannot renew a {txn.status} transaction",
                    transaction_id=transaction_id,
                )
            if txn.renewal_count >= self.max_renewals:
                raise StateConflict(
                    "renewal limit exceeded",
                    transaction_id=transaction_id,
                    renewal_count=txn.renewal_count,
                )
            if self.has_waiting_reservation and self.has_waiting_reservation(txn.copy.book_id):
                raise StateConflict(
                    "book has a waiting reservation", transaction_id=transaction_id
                )

            self._swap_status(
                session,
                txn,
                txn.status,
                due_date=txn.due_date + timedelta(days=self.config.LOAN_PERIOD_DAYS),
                renewal_count=txn.renewal_count + 1,
            )

            result = self._describe(txn, today)
            session.commit()
            logger.info(
                "Renewed transaction %s (renewal %s, due %s)",
                transaction_id,
                result["renewal_count"],
                result["due_date"],
            )
            return result
        finally:
            session.close()

    # ----------------- overdue sweep -----------------

    def sweep_overdue(self, today=None):
        """Mark every active loan past its due date as overdue.

        Safe to call repeatedly: already-overdue rows are not touched and no
        fines are created. Rows that changed between the scan and the write
        are skipped and counted.
        """
        today = self._today(today)

        session = self.Session()
        try:
            candidates = session.execute(
                select(BorrowingTransaction.id).where(
                    BorrowingTransaction.status == "active",
                    BorrowingTransaction.due_date < today,
                )
            ).scalars().all()

            transitioned = skipped = 0
            for txn_id in candidates:
                result = session.execute(
                    update(BorrowingTransaction)
                    .where(
                        BorrowingTransaction.id == txn_id,
                        BorrowingTransaction.status == "active",
                        BorrowingTransaction.due_date < today,
                    )
                    .values(status="overdue", updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    transitioned += 1
                else:
                    skipped += 1
                    logger.warning("Sweep skipped transaction %s (changed concurrently)", txn_id)
            session.commit()
        finally:
            session.close()

        logger.info("Overdue sweep for %s: %s transitioned, %s skipped", today, transitioned, skipped)
        return SweepResult(transitioned, skipped)

    # ----------------- lost -----------------

    def mark_lost(self, transaction_id, notes=None, today=None):
        today = self._today(today)

        session = self.Session()
        try:
            txn = self._get_transaction(session, transaction_id, for_update=True)
            if txn.status not in OPEN_BORROWING_STATUSES:
                raise StateConflict(
                    f"transaction already {txn.status}", transaction_id=transaction_id
                )

            self._swap_status(session, txn, "lost", notes=_append_note(txn.notes, notes))
            # withdrawn from circulation until staff resolve it
            CatalogStore(session).set_copy_status(txn.book_copy_id, "maintenance")
            fine = FineLedger(session, self.config).assess_lost(txn, today)

            result = self._describe(txn, today)
            result["fine"] = fine_to_dict(fine)
            session.commit()
            logger.info("Transaction %s marked lost", transaction_id)
            return result
        finally:
            session.close()

    # ----------------- reads -----------------

    def get_transaction(self, transaction_id, today=None):
        today = self._today(today)
        session = self.Session()
        try:
            txn = self._get_transaction(session, transaction_id)
            result = self._describe(txn, today)
            result["fines"] = [fine_to_dict(f) for f in txn.fines]
            return result
        finally:
            session.close()

    def list_transactions(self, member_id=None, status=None, today=None):
        today = self._today(today)
        q = select(BorrowingTransaction)
        if member_id is not None:
            q = q.where(BorrowingTransaction.member_id == member_id)
        if status:
            require_choice(status, BORROWING_STATUSES, "status")
            q = q.where(BorrowingTransaction.status == status)
        q = q.order_by(BorrowingTransaction.borrowed_date.desc(), BorrowingTransaction.id.desc())

        session = self.Session()
        try:
            if member_id is not None:
                MemberStore(session, self.config).get_member(member_id)
            return [self._describe(t, today) for t in session.execute(q).scalars().all()]
        finally:
            session.close()

    # ----------------- fines -----------------

    def member_fines(self, member_id, status=None):
        session = self.Session()
        try:
            MemberStore(session, self.config).get_member(member_id)
            ledger = FineLedger(session, self.config)
            fines = ledger.list_member_fines(member_id, status)
            return {
                "fines": [fine_to_dict(f) for f in fines],
                "unpaid_total": float(ledger.unpaid_total(member_id)),
            }
        finally:
            session.close()

    def _settle_fine(self, fine_id, action):
        session = self.Session()
        try:
            fine = action(FineLedger(session, self.config))
            result = fine_to_dict(fine)
            session.commit()
            return result
        finally:
            session.close()

    def pay_fine(self, fine_id, paid_date=None, today=None):
        paid_date = parse_date(paid_date, "paid_date") or self._today(today)
        return self._settle_fine(fine_id, lambda ledger: ledger.pay(fine_id, paid_date))

    def waive_fine(self, fine_id):
        return self._settle_fine(fine_id, lambda ledger: ledger.waive(fine_id))

    def dispute_fine(self, fine_id):
        return self._settle_fine(fine_id, lambda ledger: ledger.dispute(fine_id))
