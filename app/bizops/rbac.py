from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g

from app.bizops.errors import AuthError, PermissionDenied
from app.bizops.models import User


def permission_keys(user: User | None) -> set[str]:
    if not user or not user.is_active:
        return set()
    return {perm.key for role in user.roles for perm in role.permissions}


def user_has_permission(user: User | None, permission_key: str) -> bool:
    return permission_key in permission_keys(user)


def _active_user() -> User:
    user: User | None = getattr(g, "current_user", None)
    if not user or not user.is_active:
        raise AuthError("Unauthorized")
    return user


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        _active_user()
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """401 without a session, 403 (naming the missing key) without the permission."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            if not user_has_permission(_active_user(), permission_key):
                g.missing_permission = permission_key
                raise PermissionDenied("Forbidden", details={"missing_permission": permission_key})
            return fn(*args, **kwargs)

        return wrapped

    return decorator
