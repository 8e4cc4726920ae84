from __future__ import annotations

import logging
import uuid

from fastapi import HTTPException, status
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from partnerhub.authz.models import Role, UserRole
from partnerhub.authz.permissions import (
    AVAILABLE_PERMISSIONS,
    REFERRALS_APPROVE,
    SYSTEM_ROLE_PERMISSIONS,
    normalize_role_name,
)
from partnerhub.authz.schemas import PermissionRead, RoleCreate, RoleRead, RoleUpdate, UserRoleRead


logger = logging.getLogger("partnerhub.authz")


class AuthorizationAdminService:
    def seed_system_roles(self, session: Session) -> list[str]:
        """Create missing system roles with their default tokens; existing rows are left as operators edited them."""

        created: list[str] = []
        for name, tokens in SYSTEM_ROLE_PERMISSIONS.items():
            existing = session.scalar(select(Role).where(Role.key == name))
            if existing is not None:
                continue
            session.add(Role(name=name, key=name, permissions=list(tokens), is_system=True, is_active=True))
            created.append(name)

        if not created:
            return created
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            return []
        logger.info("authz.system_roles_seeded", extra={"role": ",".join(created)})
        return created

    def list_available_permissions(self) -> list[PermissionRead]:
        return [
            PermissionRead(token=token, label=label, group=token.split(".", 1)[0])
            for token, label in AVAILABLE_PERMISSIONS.items()
        ]

    def create_role(self, session: Session, dto: RoleCreate) -> RoleRead:
        self._ensure_known_tokens(dto.permissions)
        name = dto.name.strip()
        role = Role(
            name=name,
            key=normalize_role_name(name),
            description=dto.description,
            permissions=dto.permissions,
            is_system=False,
            is_active=True,
        )
        session.add(role)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="role already exists")
        session.refresh(role)
        return RoleRead.model_validate(role)

    def list_roles(self, session: Session) -> list[RoleRead]:
        rows = session.scalars(select(Role).order_by(Role.key.asc())).all()
        return [RoleRead.model_validate(row) for row in rows]

    def get_role(self, session: Session, role_id: uuid.UUID) -> RoleRead:
        return RoleRead.model_validate(self._get_role_or_404(session, role_id))

    def update_role(self, session: Session, role_id: uuid.UUID, dto: RoleUpdate) -> RoleRead:
        role = self._get_role_or_404(session, role_id)
        if dto.name is not None and role.is_system and normalize_role_name(dto.name) != role.key:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="system role cannot be renamed")
        if dto.permissions is not None:
            self._ensure_known_tokens(dto.permissions)

        if dto.name is not None:
            role.name = dto.name.strip()
            role.key = normalize_role_name(dto.name)
        if "description" in dto.model_fields_set:
            role.description = dto.description
        if dto.permissions is not None:
            role.permissions = dto.permissions
        if dto.is_active is not None:
            role.is_active = dto.is_active

        self._ensure_approver_remains(session, role)

        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="role already exists")
        session.refresh(role)
        return RoleRead.model_validate(role)

    def delete_role(self, session: Session, role_id: uuid.UUID) -> None:
        role = self._get_role_or_404(session, role_id)
        if role.is_system:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="system role cannot be deleted")

        assigned = session.scalar(select(func.count()).select_from(UserRole).where(UserRole.role_id == role.id)) or 0
        if assigned:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"role is assigned to {assigned} user(s)",
            )

        self._ensure_approver_remains(session, role, removing=True)
        session.delete(role)
        session.commit()

    def assign_role_to_user(self, session: Session, user_id: str, role_id: uuid.UUID) -> UserRoleRead:
        role = self._get_role_or_404(session, role_id)

        mapping = session.scalar(
            select(UserRole).where(
                and_(UserRole.user_id == user_id, UserRole.role_id == role_id)
            )
        )
        if mapping is None:
            mapping = UserRole(user_id=user_id, role_id=role_id)
            session.add(mapping)
            session.commit()
            session.refresh(mapping)

        return UserRoleRead(user_id=mapping.user_id, role_id=mapping.role_id, role_name=role.name, created_at=mapping.created_at)

    def list_user_roles(self, session: Session, user_id: str | None = None) -> list[UserRoleRead]:
        stmt = select(UserRole, Role).join(Role, UserRole.role_id == Role.id).order_by(UserRole.user_id.asc(), Role.key.asc())
        if user_id is not None:
            stmt = stmt.where(UserRole.user_id == user_id)
        rows = session.execute(stmt).all()
        return [
            UserRoleRead(user_id=mapping.user_id, role_id=mapping.role_id, role_name=role.name, created_at=mapping.created_at)
            for mapping, role in rows
        ]

    def unassign_role_from_user(self, session: Session, user_id: str, role_id: uuid.UUID) -> None:
        mapping = session.scalar(
            select(UserRole).where(
                and_(UserRole.user_id == user_id, UserRole.role_id == role_id)
            )
        )
        if mapping is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user-role mapping not found")

        session.delete(mapping)
        session.commit()

    @staticmethod
    def _get_role_or_404(session: Session, role_id: uuid.UUID) -> Role:
        role = session.scalar(select(Role).where(Role.id == role_id))
        if role is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="role not found")
        return role

    @staticmethod
    def _ensure_known_tokens(tokens: list[str]) -> None:
        unknown = [token for token in tokens if token not in AVAILABLE_PERMISSIONS]
        if unknown:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"unknown permission tokens: {', '.join(unknown)}",
            )

    @staticmethod
    def _ensure_approver_remains(session: Session, role: Role, *, removing: bool = False) -> None:
        # Autoflush is off, so the pending edits on ``role`` are read from the instance itself.
        candidates = list(session.scalars(select(Role).where(Role.id != role.id)).all())
        if not removing:
            candidates.append(role)

        if any(candidate.is_active and REFERRALS_APPROVE in (candidate.permissions or []) for candidate in candidates):
            return
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"at least one active role must keep {REFERRALS_APPROVE}",
        )


authorization_admin_service = AuthorizationAdminService()
