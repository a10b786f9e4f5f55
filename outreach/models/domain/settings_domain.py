"""
Typed per-tenant automation settings.

The dashboard stores tenant settings as a free-form JSON document; the
batch jobs read it once per tenant through these models so every knob
has a defined default.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

CADENCE_DAYS = {
    "weekly": 7,
    "biweekly": 14,
    "monthly": 30,
    "quarterly": 91,
}


def cadence_to_days(cadence: str) -> int:
    return CADENCE_DAYS.get(cadence, 7)


class _SettingsSection(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class AutosendSettings(_SettingsSection):
    enabled: bool = True
    min_impact_score: int = 60
    require_recent_activity: bool = True
    # Stored for the dashboard only; the gate blocks muted members regardless
    respect_contact_state: bool = True


class DraftGenerationSettings(_SettingsSection):
    enabled: bool = True
    cadence: str = "weekly"
    max_per_run: int = Field(default=200, ge=0)

    @field_validator("cadence")
    @classmethod
    def _known_cadence(cls, value: str) -> str:
        return value if value in CADENCE_DAYS else "weekly"

    @property
    def cadence_days(self) -> int:
        return cadence_to_days(self.cadence)


class TenantAutomationSettings(_SettingsSection):
    tenant_id: str
    autosend: AutosendSettings = Field(default_factory=AutosendSettings)
    drafts: DraftGenerationSettings = Field(default_factory=DraftGenerationSettings)

    @classmethod
    def from_document(cls, tenant_id: str, document: dict[str, Any] | None) -> "TenantAutomationSettings":
        """Build settings from the raw tenant_settings.settings JSON."""
        document = document or {}
        automation = document.get("automation")
        automation = automation if isinstance(automation, dict) else {}

        autosend = document.get("autosend")
        drafts = automation.get("drafts")

        return cls(
            tenant_id=tenant_id,
            autosend=AutosendSettings.model_validate(autosend if isinstance(autosend, dict) else {}),
            drafts=DraftGenerationSettings.model_validate(drafts if isinstance(drafts, dict) else {}),
        )
