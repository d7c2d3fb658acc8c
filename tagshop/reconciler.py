import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import aliased

from tagshop.errors import DuplicateEvent, OrderNotFound, StoreUnavailable
from tagshop.models import Order, OrderStatus, ProcessedEvent, utcnow
from tagshop.state_machine import Decision, OrderLookup, is_downgrade

logger = logging.getLogger(__name__)

APPLIED = "applied"
UNCHANGED = "unchanged"
REJECTED = "rejected"

_RETURNED_COLUMNS = (
    Order.id,
    Order.contact_id,
    Order.payment_reference,
    Order.amount,
    Order.currency,
    Order.status,
)


@dataclass(frozen=True)
class AppliedOrder:
    id: int
    contact_id: Optional[int]
    payment_reference: Optional[str]
    amount: int
    currency: str
    status: OrderStatus
    outcome: str = APPLIED

    @property
    def changed(self) -> bool:
        return self.outcome == APPLIED

    @classmethod
    def from_row(cls, row, outcome: str = APPLIED) -> "AppliedOrder":
        return cls(
            id=row.id,
            contact_id=row.contact_id,
            payment_reference=row.payment_reference,
            amount=row.amount,
            currency=row.currency,
            status=OrderStatus(row.status),
            outcome=outcome,
        )


def _identity(lookup: OrderLookup):
    if lookup.order_id is not None:
        return Order.id == lookup.order_id
    # a shared reference resolves to the oldest order only
    shared = aliased(Order)
    first = select(func.min(shared.id)).where(shared.payment_reference == lookup.payment_reference)
    return Order.id == first.scalar_subquery()


class OrderReconciler:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def apply(self, lookup: OrderLookup, decision: Decision, event_id: Optional[str] = None) -> AppliedOrder:
        """Write ``decision`` onto the order ``lookup`` identifies.

        Raises ``DuplicateEvent`` when ``event_id`` was already recorded,
        ``OrderNotFound`` when nothing matches the lookup and
        ``StoreUnavailable`` on any other database failure.
        """
        session = self._session_factory()
        try:
            if event_id:
                session.add(ProcessedEvent(event_id=event_id, event_type=decision.event_type))
                try:
                    session.flush()
                except IntegrityError:
                    session.rollback()
                    raise DuplicateEvent(event_id)

            forward = decision.allowed_from - decision.recovers_from
            row = session.execute(self._statement(lookup, decision, forward)).first()
            if row is None and decision.recovers_from:
                row = session.execute(self._statement(lookup, decision, decision.recovers_from)).first()
                if row is not None:
                    logger.warning(
                        "Recovered order %s: %s moved it from failed to %s",
                        row.id,
                        decision.event_type,
                        decision.target_status.value,
                    )
            if row is not None:
                result = AppliedOrder.from_row(row)
            else:
                result = self._classify(session, lookup, decision)

            session.commit()
        except (DuplicateEvent, OrderNotFound):
            raise
        except DBAPIError as exc:
            session.rollback()
            logger.error("Store error applying %s to %s: %s", decision.event_type, lookup, exc)
            raise StoreUnavailable(str(exc)) from exc
        finally:
            session.close()

        logger.info(
            "Reconciled %s: %s outcome=%s status=%s payment_reference=%s",
            decision.event_type,
            lookup,
            result.outcome,
            result.status.value,
            result.payment_reference,
        )
        return result

    def _statement(self, lookup: OrderLookup, decision: Decision, from_statuses):
        values = {"updated_at": utcnow()}
        if decision.target_status is not None:
            values["status"] = decision.target_status.value
        if decision.payment_reference is not None:
            values["payment_reference"] = decision.payment_reference

        stmt = update(Order).where(_identity(lookup))
        if decision.target_status is not None:
            stmt = stmt.where(Order.status.in_([s.value for s in from_statuses]))
        if decision.reference_if_unset:
            stmt = stmt.where(Order.payment_reference.is_(None))

        return (
            stmt.values(**values)
            .returning(*_RETURNED_COLUMNS)
            .execution_options(synchronize_session=False)
        )

    def _classify(self, session, lookup: OrderLookup, decision: Decision) -> AppliedOrder:
        # Zero rows updated: find out why without writing anything
        row = session.execute(select(*_RETURNED_COLUMNS).where(_identity(lookup))).first()
        if row is None:
            # Keep the ledger entry: a redelivery cannot make the row appear
            session.commit()
            logger.warning("Order not found for %s (%s)", decision.event_type, lookup)
            raise OrderNotFound(lookup)

        current = OrderStatus(row.status)
        if is_downgrade(current, decision.target_status):
            logger.warning(
                "Suspicious transition ignored: %s would move order %s from %s to %s",
                decision.event_type,
                row.id,
                current.value,
                decision.target_status.value,
            )
            return AppliedOrder.from_row(row, REJECTED)
        return AppliedOrder.from_row(row, UNCHANGED)


def purge_processed_events(session_factory, retention_days: int, now: Optional[datetime] = None) -> int:
    """Drop ledger entries older than the retention window; returns rows deleted."""
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    session = session_factory()
    try:
        result = session.execute(delete(ProcessedEvent).where(ProcessedEvent.processed_at < cutoff))
        session.commit()
    except DBAPIError as exc:
        session.rollback()
        raise StoreUnavailable(str(exc)) from exc
    finally:
        session.close()

    if result.rowcount:
        logger.info("Purged %d processed webhook events older than %s", result.rowcount, cutoff)
    return result.rowcount
