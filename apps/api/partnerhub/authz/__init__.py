from partnerhub.authz.models import Role, UserRole

__all__ = [
    "Role",
    "UserRole",
]
