from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from partnerhub.authz.errors import ForbiddenError
from partnerhub.authz.models import Role


DASHBOARD_VIEW = "dashboard.view"
DASHBOARD_ANALYTICS = "dashboard.analytics"
CLIENTS_VIEW = "clients.view"
CLIENTS_CREATE = "clients.create"
CLIENTS_EDIT = "clients.edit"
CLIENTS_DELETE = "clients.delete"
REFERRALS_VIEW = "referrals.view"
REFERRALS_CREATE = "referrals.create"
REFERRALS_VALIDATE = "referrals.validate"
REFERRALS_APPROVE = "referrals.approve"
REPORTS_VIEW = "reports.view"
REPORTS_EXPORT = "reports.export"
REPORTS_ALL_PARTNERS = "reports.all_partners"
SUPPORT_VIEW = "support.view"
SUPPORT_MANAGE = "support.manage"
ADMIN_USERS = "admin.users"
ADMIN_ROLES = "admin.roles"
ADMIN_SETTINGS = "admin.settings"
ADMIN_SYSTEM = "admin.system"
COMMISSIONS_VIEW = "commissions.view"
COMMISSIONS_MANAGE = "commissions.manage"
CHATBOT_VIEW = "chatbot.view"
CHATBOT_MANAGE = "chatbot.manage"

# Catalog order is the display order for role editors.
AVAILABLE_PERMISSIONS: dict[str, str] = {
    DASHBOARD_VIEW: "View dashboard",
    DASHBOARD_ANALYTICS: "View dashboard analytics",
    CLIENTS_VIEW: "View clients",
    CLIENTS_CREATE: "Create clients",
    CLIENTS_EDIT: "Edit clients",
    CLIENTS_DELETE: "Delete clients",
    REFERRALS_VIEW: "View referrals",
    REFERRALS_CREATE: "Submit referrals",
    REFERRALS_VALIDATE: "Validate referrals",
    REFERRALS_APPROVE: "Approve or reject referrals",
    REPORTS_VIEW: "View reports",
    REPORTS_EXPORT: "Export reports",
    REPORTS_ALL_PARTNERS: "View reports for all partners",
    SUPPORT_VIEW: "View support tickets",
    SUPPORT_MANAGE: "Manage support tickets",
    ADMIN_USERS: "Manage users",
    ADMIN_ROLES: "Manage roles",
    ADMIN_SETTINGS: "Manage settings",
    ADMIN_SYSTEM: "System administration",
    COMMISSIONS_VIEW: "View commissions",
    COMMISSIONS_MANAGE: "Manage commissions",
    CHATBOT_VIEW: "Use chatbot",
    CHATBOT_MANAGE: "Configure chatbot",
}

SYSTEM_ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "admin": tuple(AVAILABLE_PERMISSIONS),
    "manager": (
        DASHBOARD_VIEW,
        DASHBOARD_ANALYTICS,
        CLIENTS_VIEW,
        CLIENTS_CREATE,
        CLIENTS_EDIT,
        REFERRALS_VIEW,
        REFERRALS_CREATE,
        REFERRALS_VALIDATE,
        REPORTS_VIEW,
        REPORTS_EXPORT,
        REPORTS_ALL_PARTNERS,
        SUPPORT_VIEW,
        COMMISSIONS_VIEW,
        CHATBOT_VIEW,
    ),
    "partner": (
        DASHBOARD_VIEW,
        CLIENTS_VIEW,
        REFERRALS_VIEW,
        REFERRALS_CREATE,
        REPORTS_VIEW,
        SUPPORT_VIEW,
        COMMISSIONS_VIEW,
        CHATBOT_VIEW,
    ),
}


def normalize_role_name(role: str | None) -> str:
    return (role or "").strip().lower()


def dedupe_tokens(tokens: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for token in tokens:
        value = token.strip()
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


@dataclass(frozen=True, slots=True)
class RoleGrant:
    key: str
    permissions: frozenset[str]
    is_active: bool = True


class RoleRegistry(Protocol):
    """Source of role definitions keyed by normalized role name."""

    def get_role(self, key: str) -> RoleGrant | None:
        ...


class InMemoryRoleRegistry:
    def __init__(self, roles: Mapping[str, Iterable[str]] | None = None) -> None:
        source = SYSTEM_ROLE_PERMISSIONS if roles is None else roles
        self._roles = {
            normalize_role_name(name): RoleGrant(key=normalize_role_name(name), permissions=frozenset(tokens))
            for name, tokens in source.items()
        }

    def get_role(self, key: str) -> RoleGrant | None:
        return self._roles.get(key)


class DbRoleRegistry:
    """Resolves roles from ``authz_role`` using the caller's session."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_role(self, key: str) -> RoleGrant | None:
        row = self._session.scalar(select(Role).where(Role.key == key))
        if row is None:
            return None
        return RoleGrant(key=row.key, permissions=frozenset(row.permissions or []), is_active=row.is_active)


class PermissionModel:
    """Answers whether a role holds permission tokens.

    Role names arrive in whatever casing and padding the caller stored them
    with; they are normalized here and nowhere else. Unknown and inactive
    roles hold no permissions.
    """

    def __init__(self, registry: RoleRegistry) -> None:
        self._registry = registry

    @classmethod
    def for_session(cls, session: Session) -> PermissionModel:
        return cls(DbRoleRegistry(session))

    def permissions_for(self, role: str | None) -> frozenset[str]:
        grant = self._registry.get_role(normalize_role_name(role))
        if grant is None or not grant.is_active:
            return frozenset()
        return grant.permissions

    def has_permission(self, role: str | None, token: str) -> bool:
        return token in self.permissions_for(role)

    def authorize(self, role: str | None, tokens: Iterable[str]) -> bool:
        grant = self._registry.get_role(normalize_role_name(role))
        if grant is None or not grant.is_active:
            return False
        return all(token in grant.permissions for token in tokens)

    def require(self, role: str | None, tokens: Iterable[str]) -> None:
        required = list(tokens)
        if not self.authorize(role, required):
            raise ForbiddenError(normalize_role_name(role), required)
