"""
Repository helpers for tenants and their automation settings.
"""

from outreach.db.helpers import fetch_all, fetch_one, with_db_retry
from outreach.infrastructure.observability.logging import get_logger
from outreach.models.domain.settings_domain import TenantAutomationSettings

logger = get_logger(__name__)


class TenantRepository:
    """Tenant listing and settings lookups used at the start of every batch."""

    @with_db_retry(max_retries=2)
    async def list_tenant_ids(self) -> list[str]:
        rows = await fetch_all("SELECT id FROM tenants ORDER BY id")
        return [row["id"] for row in rows]

    async def fetch_automation_settings(self, tenant_id: str) -> TenantAutomationSettings:
        """
        Load typed automation settings; a tenant without a settings row gets
        the defaults.

        Raises:
            pydantic.ValidationError: If the stored document has invalid values
        """
        row = await fetch_one(
            "SELECT settings FROM tenant_settings WHERE tenant_id = %s",
            (tenant_id,),
        )
        document = row.get("settings") if row else None
        return TenantAutomationSettings.from_document(tenant_id, document)


tenant_repository = TenantRepository()
