from collections.abc import Callable

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from partnerhub.authz.permissions import PermissionModel
from partnerhub.core.auth import ActorUser, get_current_actor
from partnerhub.core.database import get_db


def require_permissions(*permissions: str) -> Callable[..., ActorUser]:
    def checker(
        actor: ActorUser = Depends(get_current_actor),
        db: Session = Depends(get_db),
    ) -> ActorUser:
        granted = PermissionModel.for_session(db).permissions_for(actor.role)
        missing_permissions = [permission for permission in permissions if permission not in granted]
        if missing_permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing_permissions)}",
            )
        return actor

    return checker
