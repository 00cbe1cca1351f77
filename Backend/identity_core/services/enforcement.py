"""
Two-factor enforcement resolution.

The effective requirement for a user cascades from system to park to company:

- system required/disabled decides on its own
- otherwise park required wins without consulting the company
- otherwise company required wins, company inherit takes the park result,
  and park inherit counts as optional
"""

import uuid
from typing import Optional

from identity_core.models.tenancy import Enforcement, LevelEnforcement
from identity_core.repositories.base import TenantSettingsReader


def resolve_enforcement(
    system: Enforcement,
    park: Optional[LevelEnforcement] = None,
    company: Optional[LevelEnforcement] = None,
) -> Enforcement:
    """Resolve the effective 2FA requirement from the three stored levels."""
    if system is Enforcement.REQUIRED:
        return Enforcement.REQUIRED
    if system is Enforcement.DISABLED:
        return Enforcement.DISABLED

    park = park or LevelEnforcement.INHERIT
    if park is LevelEnforcement.REQUIRED:
        return Enforcement.REQUIRED
    # inherit and optional both resolve to optional at park level
    resolved_park = Enforcement.OPTIONAL

    company = company or LevelEnforcement.INHERIT
    if company is LevelEnforcement.REQUIRED:
        return Enforcement.REQUIRED
    if company is LevelEnforcement.INHERIT:
        return resolved_park
    return Enforcement.OPTIONAL


class EnforcementResolver:
    """Reads the stored levels for a (park, company) pair and resolves them."""

    def __init__(self, settings_reader: TenantSettingsReader):
        self.settings_reader = settings_reader

    async def resolve(
        self,
        park_id: Optional[uuid.UUID],
        company_id: Optional[uuid.UUID],
    ) -> Enforcement:
        defaults = await self.settings_reader.get_platform_defaults()
        if defaults.enforcement is not Enforcement.OPTIONAL:
            return resolve_enforcement(defaults.enforcement)

        park = await self.settings_reader.get_park_enforcement(park_id) if park_id else None
        if park is LevelEnforcement.REQUIRED:
            return Enforcement.REQUIRED

        company = (
            await self.settings_reader.get_company_enforcement(company_id) if company_id else None
        )
        return resolve_enforcement(defaults.enforcement, park, company)
