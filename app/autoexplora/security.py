import hmac
import secrets

from flask import Request, current_app, session

CSRF_HEADER = "X-CSRF-Token"
CSRF_FIELD = "csrf_token"


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get(CSRF_FIELD)
    if not token:
        token = secrets.token_urlsafe(32)
        session[CSRF_FIELD] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from header, form field or JSON body."""
    token = req.headers.get(CSRF_HEADER) or req.form.get(CSRF_FIELD)
    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        if isinstance(json_data, dict):
            token = json_data.get(CSRF_FIELD)
    expected = session.get(CSRF_FIELD)
    if not token or not expected:
        return False
    return hmac.compare_digest(str(token), str(expected))


def validate_cron_secret(req: Request) -> bool:
    """Cron endpoints accept `Authorization: Bearer <CRON_SECRET>`; open when no secret is configured."""
    secret = current_app.config.get("CRON_SECRET") or ""
    if not secret:
        return True
    header = req.headers.get("Authorization") or ""
    return hmac.compare_digest(header, f"Bearer {secret}")


def new_token() -> str:
    return secrets.token_urlsafe(32)


def validate_password(password: str | None) -> list[str]:
    """Minimum 8 characters with at least one lowercase, one uppercase and one digit."""
    errors: list[str] = []
    pw = password or ""
    if len(pw) < 8:
        errors.append("La contraseña debe tener al menos 8 caracteres")
    if not (any(c.islower() for c in pw) and any(c.isupper() for c in pw) and any(c.isdigit() for c in pw)):
        errors.append("La contraseña debe contener al menos una mayúscula, una minúscula y un número")
    return errors
