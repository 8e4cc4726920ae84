from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from partnerhub.authz.errors import ForbiddenError
from partnerhub.authz.models import Role
from partnerhub.authz.permissions import (
    ADMIN_ROLES,
    AVAILABLE_PERMISSIONS,
    CLIENTS_VIEW,
    REFERRALS_APPROVE,
    REFERRALS_CREATE,
    REFERRALS_VALIDATE,
    SYSTEM_ROLE_PERMISSIONS,
    InMemoryRoleRegistry,
    PermissionModel,
    dedupe_tokens,
    normalize_role_name,
)
from partnerhub.authz.service import authorization_admin_service
from partnerhub.core.database import Base


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.mark.parametrize("raw", [" Manager ", "MANAGER", "manager", "\tmanager\n"])
def test_role_names_resolve_to_the_same_permission_set(raw: str) -> None:
    model = PermissionModel(InMemoryRoleRegistry())

    assert normalize_role_name(raw) == "manager"
    assert model.permissions_for(raw) == frozenset(SYSTEM_ROLE_PERMISSIONS["manager"])


def test_registry_normalizes_stored_role_keys() -> None:
    model = PermissionModel(InMemoryRoleRegistry({" Reviewer ": [REFERRALS_VALIDATE]}))

    assert model.has_permission("reviewer", REFERRALS_VALIDATE)
    assert model.has_permission("REVIEWER", REFERRALS_VALIDATE)


def test_authorize_requires_every_token() -> None:
    model = PermissionModel(InMemoryRoleRegistry())

    assert model.authorize("manager", [REFERRALS_VALIDATE, CLIENTS_VIEW])
    assert not model.authorize("manager", [REFERRALS_VALIDATE, REFERRALS_APPROVE])
    assert model.authorize("admin", [REFERRALS_VALIDATE, REFERRALS_APPROVE])
    assert model.authorize("partner", [])


@pytest.mark.parametrize("role", ["ghost", "", None, "guest"])
def test_unknown_roles_hold_nothing(role: str | None) -> None:
    model = PermissionModel(InMemoryRoleRegistry())

    assert model.permissions_for(role) == frozenset()
    assert not model.has_permission(role, REFERRALS_CREATE)
    assert not model.authorize(role, [])


def test_require_raises_forbidden_with_sorted_tokens() -> None:
    model = PermissionModel(InMemoryRoleRegistry())

    with pytest.raises(ForbiddenError) as exc_info:
        model.require(" Partner ", [REFERRALS_APPROVE, REFERRALS_VALIDATE])

    error = exc_info.value
    assert error.code == "forbidden"
    assert error.status_code == 403
    assert error.details == {"role": "partner", "required": [REFERRALS_APPROVE, REFERRALS_VALIDATE]}


def test_system_role_defaults() -> None:
    assert set(SYSTEM_ROLE_PERMISSIONS["admin"]) == set(AVAILABLE_PERMISSIONS)
    assert REFERRALS_APPROVE not in SYSTEM_ROLE_PERMISSIONS["manager"]
    assert REFERRALS_VALIDATE in SYSTEM_ROLE_PERMISSIONS["manager"]
    assert REFERRALS_VALIDATE not in SYSTEM_ROLE_PERMISSIONS["partner"]
    assert REFERRALS_CREATE in SYSTEM_ROLE_PERMISSIONS["partner"]
    assert len(AVAILABLE_PERMISSIONS) == 23


def test_dedupe_tokens_keeps_first_occurrence_order() -> None:
    assert dedupe_tokens(["b", " a", "b", "", "a", "c "]) == ["b", "a", "c"]


def test_seeding_system_roles_is_idempotent(db_session: Session) -> None:
    first = authorization_admin_service.seed_system_roles(db_session)
    second = authorization_admin_service.seed_system_roles(db_session)

    assert sorted(first) == ["admin", "manager", "partner"]
    assert second == []
    assert db_session.scalar(select(func.count()).select_from(Role)) == 3


def test_seeding_keeps_operator_edits(db_session: Session) -> None:
    authorization_admin_service.seed_system_roles(db_session)
    manager = db_session.scalar(select(Role).where(Role.key == "manager"))
    assert manager is not None
    manager.permissions = [*manager.permissions, REFERRALS_APPROVE]
    db_session.commit()

    authorization_admin_service.seed_system_roles(db_session)

    model = PermissionModel.for_session(db_session)
    assert model.has_permission("Manager", REFERRALS_APPROVE)


def test_db_registry_resolves_seeded_roles(db_session: Session) -> None:
    authorization_admin_service.seed_system_roles(db_session)
    model = PermissionModel.for_session(db_session)

    for raw in (" Manager ", "MANAGER", "manager"):
        assert model.permissions_for(raw) == frozenset(SYSTEM_ROLE_PERMISSIONS["manager"])
    assert model.authorize("ADMIN", [ADMIN_ROLES, REFERRALS_APPROVE])
    assert not model.authorize("partner", [REFERRALS_APPROVE])


def test_inactive_role_is_forbidden(db_session: Session) -> None:
    db_session.add(Role(name="Auditor", key="auditor", permissions=[CLIENTS_VIEW], is_system=False, is_active=False))
    db_session.commit()
    model = PermissionModel.for_session(db_session)

    assert model.permissions_for("auditor") == frozenset()
    assert not model.authorize("auditor", [CLIENTS_VIEW])
    with pytest.raises(ForbiddenError):
        model.require("auditor", [CLIENTS_VIEW])
