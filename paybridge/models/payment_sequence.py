"""Per-year counter backing payment numbers."""

from sqlalchemy import Column, Integer

from paybridge.core.database import Base


class PaymentSequence(Base):
    __tablename__ = "payment_sequences"

    year = Column(Integer, primary_key=True, autoincrement=False)
    last_value = Column(Integer, nullable=False, default=0)
