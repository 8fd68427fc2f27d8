"""
Integration Service
===================

Connect, list and reset exchange integrations for a user.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from oracly.exceptions import CredentialError, NotFoundError, UnsupportedProviderError
from oracly.models import Integration, IntegrationSyncState, ProviderType, SUPPORTED_PROVIDERS, utcnow
from oracly.services.portfolio.sync_cursor_store import SyncCursorStore
from oracly.services.security.credential_vault import CredentialVault, get_credential_vault

logger = logging.getLogger(__name__)


def resolve_provider(provider: Any) -> ProviderType:
    """Map a provider name to a supported ProviderType or raise."""
    if isinstance(provider, ProviderType):
        candidate = provider
    else:
        try:
            candidate = ProviderType(str(provider).strip().lower())
        except ValueError:
            raise UnsupportedProviderError(f"Unsupported provider: {provider}")
    if candidate not in SUPPORTED_PROVIDERS:
        raise UnsupportedProviderError(f"Unsupported provider: {candidate.value}")
    return candidate


class IntegrationService:
    def __init__(self, vault: Optional[CredentialVault] = None):
        self._vault = vault

    @property
    def vault(self) -> CredentialVault:
        return self._vault or get_credential_vault()

    def connect_integration(
        self,
        session: Session,
        user_id: str,
        provider: Any,
        api_key: str,
        api_secret: str,
        read_only: bool = True,
        label: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create or replace the user's integration for a provider.

        Provider and credentials are validated before anything is written.
        Returns ``{"status": "created" | "updated", "provider", "integration_id"}``.
        """
        provider_type = resolve_provider(provider)
        api_key = (api_key or "").strip()
        api_secret = (api_secret or "").strip()
        if not api_key or not api_secret:
            raise CredentialError("API key and secret are required")

        encrypted_key = self.vault.encrypt(api_key)
        encrypted_secret = self.vault.encrypt(api_secret)
        label = label.strip() if label and label.strip() else None

        existing = (
            session.query(Integration)
            .filter(Integration.user_id == user_id, Integration.provider == provider_type)
            .first()
        )
        if existing:
            existing.encrypted_api_key = encrypted_key
            existing.encrypted_api_secret = encrypted_secret
            existing.read_only = read_only
            existing.display_name = label
            existing.scopes = ["read"] if read_only else []
            existing.updated_at = utcnow()
            session.commit()
            logger.info(f"🔐 Updated {provider_type.value} integration {existing.id}")
            return {"status": "updated", "provider": provider_type.value, "integration_id": existing.id}

        integration = Integration(
            user_id=user_id,
            provider=provider_type,
            display_name=label,
            read_only=read_only,
            encrypted_api_key=encrypted_key,
            encrypted_api_secret=encrypted_secret,
            scopes=["read"] if read_only else [],
        )
        session.add(integration)
        session.commit()
        logger.info(f"🔐 Connected {provider_type.value} integration {integration.id}")
        return {"status": "created", "provider": provider_type.value, "integration_id": integration.id}

    def list_integrations(self, session: Session, user_id: str) -> List[Dict[str, Any]]:
        """The user's integrations, newest first, without ciphertext."""
        integrations = (
            session.query(Integration)
            .filter(Integration.user_id == user_id)
            .order_by(Integration.created_at.desc(), Integration.id.desc())
            .all()
        )
        return [i.to_public_dict() for i in integrations]

    def get_integration(self, session: Session, integration_id: int, user_id: Optional[str] = None) -> Integration:
        query = session.query(Integration).filter(Integration.id == integration_id)
        if user_id is not None:
            query = query.filter(Integration.user_id == user_id)
        integration = query.first()
        if integration is None:
            raise NotFoundError(f"Integration {integration_id} not found")
        return integration

    def reset_cursors(self, session: Session, integration_id: int, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Invalidate every stored cursor so the next sync re-imports full history."""
        integration = self.get_integration(session, integration_id, user_id)
        count = SyncCursorStore(session).reset(integration.id)
        session.commit()
        return {
            "success": True,
            "message": f"Reset {count} sync cursors; the next sync re-imports full history",
            "reset_count": count,
        }

    def list_sync_scopes(
        self, session: Session, user_id: str, dataset: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        query = (
            session.query(IntegrationSyncState)
            .join(Integration, Integration.id == IntegrationSyncState.integration_id)
            .filter(Integration.user_id == user_id)
        )
        if dataset:
            query = query.filter(IntegrationSyncState.dataset == dataset)
        states = query.order_by(
            IntegrationSyncState.integration_id, IntegrationSyncState.dataset, IntegrationSyncState.scope
        ).all()
        return [
            {
                "integration_id": s.integration_id,
                "dataset": s.dataset,
                "scope": s.scope,
                "initialized": (s.cursor or {}).get("initialized", True) is not False,
                "updated_at": s.updated_at.isoformat() if s.updated_at else None,
            }
            for s in states
        ]


# Global instance
integration_service = IntegrationService()
