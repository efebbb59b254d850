from fastapi import Depends, HTTPException, status

from allocator.middleware.auth import get_current_user

# Roles issued by the identity service that may write allocations.
ALLOCATION_WRITERS = ("admin", "manager", "purchaser")
AUDIT_READERS = ("admin", "manager", "auditor")


def require_roles(*allowed_roles: str):
    """
    FastAPI dependency factory for role-based access control.

    Usage:
        @router.post("/")
        async def create(
            _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
        ):
    """
    async def check_role(current_user: dict = Depends(get_current_user)):
        if current_user["role"] not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": {
                        "code": "INSUFFICIENT_PERMISSIONS",
                        "message": (
                            f"Role '{current_user['role']}' cannot perform this action. "
                            f"Required: {allowed_roles}"
                        ),
                    }
                },
            )
        return None

    return check_role
