import enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
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


class TradeType(enum.Enum):
    SPOT = "SPOT"
    CONVERT = "CONVERT"
    FIAT = "FIAT"


class Trade(Base):
    """One executed fill. Immutable once inserted."""

    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    integration_id = Column(Integer, ForeignKey("integrations.id"), nullable=False)
    provider_trade_id = Column(String(100), nullable=False)  # dedup key, with symbol

    # Trade details
    symbol = Column(String(50), nullable=False, index=True)
    base_asset = Column(String(20))  # from exchange catalog when known
    quote_asset = Column(String(20))
    side = Column(String(10), nullable=False)  # BUY, SELL
    quantity = Column(Float, nullable=False)
    price = Column(Float, nullable=False)
    quote_quantity = Column(Float)
    fee = Column(Float, default=0.0)
    fee_asset = Column(String(20))
    is_maker = Column(Boolean, default=False)
    executed_at = Column(BigInteger, nullable=False)  # epoch ms

    # Conversions carry both legs
    trade_type = Column(SQLEnum(TradeType), default=TradeType.SPOT, nullable=False)
    from_asset = Column(String(20))
    from_amount = Column(Float)
    to_asset = Column(String(20))
    to_amount = Column(Float)

    raw = Column(JSON)  # provider payload, kept for forward compatibility
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "integration_id", "symbol", "provider_trade_id", name="uq_trade_integration_symbol_provider_id"
        ),
        Index("idx_trades_integration_time", "integration_id", "executed_at"),
    )
