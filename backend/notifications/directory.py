"""Role -> contact address resolution.

The mapping is configuration, loaded from settings (``ROLE_CONTACTS``,
``ORG_ROLE_CONTACTS``, ``DEFAULT_CONTACT``) and passed into the handlers.
"""

from typing import Optional

from app.config import get_settings
from core.exceptions import HandlerError


class RoleDirectory:
    """Resolve a role to a delivery address, honouring per-org overrides."""

    def __init__(
        self,
        contacts: Optional[dict[str, str]] = None,
        org_overrides: Optional[dict[str, dict[str, str]]] = None,
        default_contact: Optional[str] = None,
    ):
        self._contacts = {k.lower(): v for k, v in (contacts or {}).items()}
        self._org_overrides = {
            org: {k.lower(): v for k, v in mapping.items()}
            for org, mapping in (org_overrides or {}).items()
        }
        self._default = default_contact

    @classmethod
    def from_settings(cls) -> "RoleDirectory":
        settings = get_settings()
        return cls(
            contacts=settings.ROLE_CONTACTS,
            org_overrides=settings.ORG_ROLE_CONTACTS,
            default_contact=settings.DEFAULT_CONTACT,
        )

    def resolve(self, role: Optional[str], organization_id: Optional[str] = None) -> str:
        """Address for ``role``; org override, then global mapping, then default.

        Raises:
            HandlerError: role unknown and no default contact configured
        """
        key = (role or "").lower()
        if organization_id:
            override = self._org_overrides.get(organization_id, {}).get(key)
            if override:
                return override
        address = self._contacts.get(key)
        if address:
            return address
        if self._default:
            return self._default
        raise HandlerError(
            f"No contact configured for role {role!r}",
            details={"role": role, "organization_id": organization_id},
        )

    def roles(self, organization_id: Optional[str] = None) -> list[str]:
        known = set(self._contacts)
        if organization_id:
            known.update(self._org_overrides.get(organization_id, {}))
        return sorted(known)
