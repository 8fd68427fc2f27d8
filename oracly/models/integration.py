"""
Integration Models
==================

A user's connection to one exchange account plus the per-dataset resumable
sync cursors for that connection.
"""

from datetime import datetime, timedelta, timezone
import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Text,
    ForeignKey,
    JSON,
    Enum as SQLEnum,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from . import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS
# =============================================================================


class ProviderType(enum.Enum):
    BINANCE = "binance"


class SyncStatus(enum.Enum):
    NEVER_SYNCED = "never_synced"
    SYNCING = "syncing"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


SUPPORTED_PROVIDERS = [ProviderType.BINANCE]


# =============================================================================
# MODELS
# =============================================================================


class Integration(Base):
    """
    One user's connection to one provider.
    At most one per (user, provider); reconnecting replaces credentials in place.
    """

    __tablename__ = "integrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)  # identity provider subject
    provider = Column(SQLEnum(ProviderType), nullable=False)
    display_name = Column(String(100))
    read_only = Column(Boolean, default=True, nullable=False)

    # Credential pair, AES-GCM ciphertext from the credential vault
    encrypted_api_key = Column(Text, nullable=False)
    encrypted_api_secret = Column(Text, nullable=False)
    scopes = Column(JSON, default=list)

    # Sync information
    sync_status = Column(SQLEnum(SyncStatus), default=SyncStatus.NEVER_SYNCED, nullable=False)
    sync_started_at = Column(DateTime)
    last_sync_attempt = Column(DateTime)
    last_successful_sync = Column(DateTime)
    sync_error_message = Column(Text)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    sync_states = relationship(
        "IntegrationSyncState", back_populates="integration", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_integration_user_provider"),
        Index("idx_integrations_sync_status", "sync_status"),
    )

    @property
    def label(self) -> str:
        return self.display_name or self.provider.value

    def can_sync(self, lock_ttl_seconds: int = None) -> bool:
        """Check if integration is eligible for sync (a stale SYNCING claim may be taken over)."""
        if self.sync_status != SyncStatus.SYNCING or self.sync_started_at is None:
            return True
        if lock_ttl_seconds is None:
            return False
        return self.sync_started_at < utcnow() - timedelta(seconds=lock_ttl_seconds)

    def update_sync_status(self, status: SyncStatus, error_message: str = None):
        """Update sync status with timestamps."""
        self.sync_status = status
        self.last_sync_attempt = utcnow()

        if status in (SyncStatus.SUCCESS, SyncStatus.PARTIAL):
            self.last_successful_sync = utcnow()
        if status == SyncStatus.SUCCESS:
            self.sync_error_message = None
        elif error_message:
            self.sync_error_message = error_message
        self.sync_started_at = utcnow() if status == SyncStatus.SYNCING else None

    def to_public_dict(self) -> dict:
        """Serializable view without ciphertext."""
        return {
            "id": self.id,
            "provider": self.provider.value,
            "display_name": self.label,
            "read_only": bool(self.read_only),
            "scopes": list(self.scopes or []),
            "sync_status": self.sync_status.value if self.sync_status else None,
            "last_sync_attempt": self.last_sync_attempt.isoformat() if self.last_sync_attempt else None,
            "last_successful_sync": (
                self.last_successful_sync.isoformat() if self.last_successful_sync else None
            ),
            "sync_error_message": self.sync_error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class IntegrationSyncState(Base):
    """Resumption cursor per (integration, dataset, scope)."""

    __tablename__ = "integration_sync_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration_id = Column(Integer, ForeignKey("integrations.id"), nullable=False, index=True)
    dataset = Column(String(50), nullable=False)
    scope = Column(String(50), nullable=False)  # trading symbol, or "default"
    cursor = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    integration = relationship("Integration", back_populates="sync_states")

    __table_args__ = (
        UniqueConstraint(
            "integration_id", "dataset", "scope", name="uq_sync_state_integration_dataset_scope"
        ),
    )
