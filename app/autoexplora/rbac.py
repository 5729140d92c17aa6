from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, redirect, request, url_for

from app.autoexplora.errors import (
    DealerInactiveError,
    DealerPendingError,
    ForbiddenError,
    UnauthorizedError,
)
from app.autoexplora.models import User

# Platform permissions (key, display name). Seeded by scripts/init_db.py.
PERMISSIONS: tuple[tuple[str, str], ...] = (
    ("admin.view", "Admin: view panel"),
    ("users.view", "Users: view"),
    ("users.manage", "Users: ban / activate"),
    ("users.roles", "Users: change platform roles"),
    ("dealers.manage", "Dealers: approve / reject / suspend"),
    ("microsites.manage", "Microsites: manage any dealer site"),
    ("vehicles.moderate", "Vehicles: moderate listings"),
    ("reports.manage", "Reports: review"),
    ("catalog.manage", "Catalog: brands, models, versions, regions"),
    ("settings.manage", "Settings: site settings"),
    ("audit.view", "Audit: view trail"),
)

ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "admin": tuple(key for key, _ in PERMISSIONS),
    "moderator": (
        "admin.view",
        "users.view",
        "dealers.manage",
        "vehicles.moderate",
        "reports.manage",
    ),
}

ROLE_NAMES = {"admin": "Administrador", "moderator": "Moderador"}


def is_api_request() -> bool:
    return request.path.startswith("/api/")


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active or user.banned_at is not None:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def user_is_staff(user: User | None) -> bool:
    return user_has_permission(user, "admin.view")


def current_user() -> User | None:
    return getattr(g, "current_user", None)


def _login_redirect():
    nxt = request.full_path or request.path
    # Avoid trailing '?' from full_path when there is no query string.
    if nxt.endswith("?"):
        nxt = nxt[:-1]
    return redirect(url_for("auth.login_get", next=nxt))


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user = current_user()
        if not user or not user.is_active:
            if is_api_request():
                raise UnauthorizedError()
            return _login_redirect()
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = current_user()
            # Unauthenticated: 401 for the API, redirect to login for pages.
            if not user or not user.is_active:
                if is_api_request():
                    raise UnauthorizedError()
                return _login_redirect()
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                if is_api_request():
                    raise ForbiddenError()
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def resolve_dealer_membership(user: User | None, roles: tuple[str, ...] = ()):
    """
    Return the active dealer of `user`, raising the matching access error otherwise.
    """
    if not user or not user.is_active:
        raise UnauthorizedError()
    dealer = user.dealer
    if dealer is None:
        raise ForbiddenError("No tienes una cuenta de automotora")
    if dealer.status == "PENDING":
        raise DealerPendingError()
    if dealer.status in ("SUSPENDED", "REJECTED"):
        raise DealerInactiveError(dealer.status)
    if roles and user.dealer_role not in roles:
        raise ForbiddenError("Tu rol en la automotora no permite esta acción")
    return dealer


def require_dealer(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Dealer back-office guard. Sets g.dealer. With `roles`, the member's dealer role must be one of them.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            g.dealer = resolve_dealer_membership(current_user(), tuple(roles))
            return fn(*args, **kwargs)

        return wrapped

    return decorator
