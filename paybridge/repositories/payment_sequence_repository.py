"""Atomic per-year counter for payment numbers."""

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paybridge.models.payment_sequence import PaymentSequence


class PaymentSequenceRepository:
    def __init__(self, db: Session):
        self.db = db

    def next_value(self, year: int) -> int:
        """Increment and return the counter for ``year``.

        Must be the first write of its transaction: losing the race to create
        a year's row rolls the transaction back before retrying. Does not
        commit; the counter row stays locked until the caller commits.
        """
        for _ in range(3):
            updated = (
                self.db.query(PaymentSequence)
                .filter(PaymentSequence.year == year)
                .update(
                    {PaymentSequence.last_value: PaymentSequence.last_value + 1},
                    synchronize_session=False,
                )
            )
            if not updated:
                try:
                    self.db.add(PaymentSequence(year=year, last_value=1))
                    self.db.flush()
                except IntegrityError:
                    # Another transaction created the row first
                    self.db.rollback()
                    continue
            value = (
                self.db.query(PaymentSequence.last_value)
                .filter(PaymentSequence.year == year)
                .scalar()
            )
            return int(value)

        raise RuntimeError(f"Could not allocate a payment number for {year}")
