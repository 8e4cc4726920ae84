from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from partnerhub.authz.permissions import ADMIN_ROLES
from partnerhub.authz.schemas import (
    AssignUserRoleRequest,
    PermissionRead,
    RoleCreate,
    RoleRead,
    RoleUpdate,
    UserRoleRead,
)
from partnerhub.authz.service import authorization_admin_service
from partnerhub.core.auth import ActorUser
from partnerhub.core.database import get_db
from partnerhub.core.rbac import require_permissions


admin_router = APIRouter(prefix="/admin", tags=["admin.authz"])

_require_role_admin = require_permissions(ADMIN_ROLES)


@admin_router.get("/permissions", response_model=list[PermissionRead])
def list_available_permissions(
    _user: ActorUser = Depends(_require_role_admin),
) -> list[PermissionRead]:
    return authorization_admin_service.list_available_permissions()


@admin_router.post("/roles", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
def create_role(
    dto: RoleCreate,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(_require_role_admin),
) -> RoleRead:
    return authorization_admin_service.create_role(db, dto)


@admin_router.get("/roles", response_model=list[RoleRead])
def list_roles(
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(_require_role_admin),
) -> list[RoleRead]:
    return authorization_admin_service.list_roles(db)


@admin_router.get("/roles/{role_id}", response_model=RoleRead)
def get_role(
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(_require_role_admin),
) -> RoleRead:
    return authorization_admin_service.get_role(db, role_id)


@admin_router.patch("/roles/{role_id}", response_model=RoleRead)
def update_role(
    role_id: uuid.UUID,
    dto: RoleUpdate,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(_require_role_admin),
) -> RoleRead:
    return authorization_admin_service.update_role(db, role_id, dto)


@admin_router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(_require_role_admin),
) -> None:
    authorization_admin_service.delete_role(db, role_id)


@admin_router.post("/users/{user_id}/roles", response_model=UserRoleRead, status_code=status.HTTP_201_CREATED)
def assign_user_role(
    user_id: str,
    dto: AssignUserRoleRequest,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(_require_role_admin),
) -> UserRoleRead:
    return authorization_admin_service.assign_role_to_user(db, user_id, dto.role_id)


@admin_router.get("/users/{user_id}/roles", response_model=list[UserRoleRead])
def list_user_roles(
    user_id: str,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(_require_role_admin),
) -> list[UserRoleRead]:
    return authorization_admin_service.list_user_roles(db, user_id=user_id)


@admin_router.delete("/users/{user_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def unassign_user_role(
    user_id: str,
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(_require_role_admin),
) -> None:
    authorization_admin_service.unassign_role_from_user(db, user_id=user_id, role_id=role_id)
