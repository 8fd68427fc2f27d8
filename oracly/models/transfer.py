"""
Transfer Models
===============

Inbound (deposit) and outbound (withdrawal) coin movements.
Same dedup and immutability rules as trades.
"""

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)

from . import Base
from .integration import utcnow


class Deposit(Base):
    __tablename__ = "deposits"

    id = Column(Integer, primary_key=True, index=True)
    integration_id = Column(Integer, ForeignKey("integrations.id"), nullable=False)
    deposit_id = Column(String(100), nullable=False)  # dedup key

    tx_id = Column(String(255))
    coin = Column(String(20), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    network = Column(String(50))
    address = Column(String(255))
    address_tag = Column(String(100))
    status = Column(String(20))
    insert_time = Column(BigInteger, nullable=False)  # epoch ms

    raw = Column(JSON)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("integration_id", "deposit_id", name="uq_deposit_integration_provider_id"),
        Index("idx_deposits_integration_time", "integration_id", "insert_time"),
    )


class Withdrawal(Base):
    __tablename__ = "withdrawals"

    id = Column(Integer, primary_key=True, index=True)
    integration_id = Column(Integer, ForeignKey("integrations.id"), nullable=False)
    withdraw_id = Column(String(100), nullable=False)  # dedup key

    tx_id = Column(String(255))
    coin = Column(String(20), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    network = Column(String(50))
    address = Column(String(255))
    address_tag = Column(String(100))
    fee = Column(Float, default=0.0)
    status = Column(String(20))
    apply_time = Column(BigInteger, nullable=False)  # epoch ms
    update_time = Column(BigInteger)

    raw = Column(JSON)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("integration_id", "withdraw_id", name="uq_withdrawal_integration_provider_id"),
        Index("idx_withdrawals_integration_time", "integration_id", "apply_time"),
    )
