"""
Oracly Database Models
======================

Centralized model imports for the Oracly application.
All database models are imported here for easy access.
"""

# Core Base
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Exchange connections and their resumable sync state
from .integration import (
    Integration,
    IntegrationSyncState,
    ProviderType,
    SyncStatus,
    SUPPORTED_PROVIDERS,
    utcnow,
)

# Raw exchange history (immutable once stored)
from .trade import Trade, TradeType
from .transfer import Deposit, Withdrawal

__all__ = [
    "Base",
    "Integration",
    "IntegrationSyncState",
    "ProviderType",
    "SyncStatus",
    "SUPPORTED_PROVIDERS",
    "utcnow",
    "Trade",
    "TradeType",
    "Deposit",
    "Withdrawal",
]
