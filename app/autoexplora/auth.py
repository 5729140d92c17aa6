from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, jsonify, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash, generate_password_hash

from app.autoexplora.audit import record_event
from app.autoexplora.db import db_session
from app.autoexplora.errors import RateLimitedError, UnauthorizedError, ValidationError
from app.autoexplora.mailer import send_password_reset_email, send_verification_email
from app.autoexplora.models import AuthToken, User
from app.autoexplora.rbac import require_login, user_is_staff
from app.autoexplora.security import new_token, validate_password
from app.autoexplora.utils import clean_str, is_valid_email, iso, json_payload, parse_int

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

VERIFY_TOKEN_TTL = timedelta(hours=24)
RESET_TOKEN_TTL = timedelta(hours=1)


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Banned or deactivated users are treated as anonymous.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    s = db_session()
    user = s.get(User, int(user_id))
    if not user or not user.is_active or user.is_banned:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


def serialize_me(user: User) -> dict:
    dealer = user.dealer
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "phone": user.phone,
        "image": user.image,
        "email_verified": user.email_verified_at is not None,
        "roles": sorted(r.key for r in user.roles),
        "is_staff": user_is_staff(user),
        "default_region_id": user.default_region_id,
        "dealer": (
            {"id": dealer.id, "slug": dealer.slug, "trade_name": dealer.trade_name, "status": dealer.status, "role": user.dealer_role}
            if dealer
            else None
        ),
        "created_at": iso(user.created_at),
    }


# ---------- Account helpers ----------
def issue_token(s, user: User, purpose: str, ttl: timedelta) -> AuthToken:
    # only the newest token of a purpose stays valid
    now = datetime.utcnow()
    s.query(AuthToken).filter(
        AuthToken.user_id == user.id, AuthToken.purpose == purpose, AuthToken.used_at.is_(None)
    ).update({AuthToken.used_at: now}, synchronize_session=False)
    token = AuthToken(user_id=user.id, purpose=purpose, token=new_token(), expires_at=now + ttl)
    s.add(token)
    s.flush()
    return token


def consume_token(s, raw: str | None, purpose: str) -> User:
    token = s.query(AuthToken).filter(AuthToken.token == (raw or ""), AuthToken.purpose == purpose).one_or_none()
    if not token or token.used_at is not None or token.expires_at < datetime.utcnow():
        raise ValidationError("El enlace es inválido o ha expirado")
    token.used_at = datetime.utcnow()
    return token.user


def register_user(s, payload: dict) -> tuple[User, AuthToken]:
    name = clean_str(payload.get("name"))
    email = (clean_str(payload.get("email")) or "").lower()
    password = payload.get("password") or ""
    errors: list[str] = []
    if not name or len(name) < 2:
        errors.append("El nombre debe tener al menos 2 caracteres")
    if not is_valid_email(email):
        errors.append("Email inválido")
    errors.extend(validate_password(password))
    if errors:
        raise ValidationError.from_errors(errors)
    if s.query(User.id).filter(User.email == email).first():
        raise ValidationError("Ya existe una cuenta con este email")

    user = User(email=email, name=name, password_hash=generate_password_hash(password), is_active=True)
    s.add(user)
    s.flush()
    token = issue_token(s, user, "verify_email", VERIFY_TOKEN_TTL)
    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=str(user.id))
    return user, token


def authenticate(s, email: str, password: str, ip: str) -> User:
    if _check_rate_limit(ip):
        raise RateLimitedError()
    _record_attempt(ip)

    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not user.password_hash or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        raise UnauthorizedError("Credenciales inválidas")
    if user.is_banned:
        raise UnauthorizedError("Tu cuenta ha sido suspendida")
    _login_attempts[ip].clear()
    return user


def login_user(s, user: User, method: str = "password") -> None:
    session["user_id"] = user.id
    session.permanent = True
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id), metadata={"method": method})


def _safe_next(nxt: str | None) -> str | None:
    nxt = (nxt or "").strip()
    # Only allow local paths to avoid open redirects.
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


# ---------- HTML ----------
@bp.get("/login")
def login_get():
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt, google_enabled=bool(current_app.config.get("GOOGLE_CLIENT_ID")))


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = _safe_next(request.form.get("next"))
    ip = request.remote_addr or "unknown"

    s = db_session()
    try:
        user = authenticate(s, email, password, ip)
    except (RateLimitedError, UnauthorizedError) as e:
        flash(e.message, "danger")
        return redirect(url_for("auth.login_get", next=nxt or None))
    login_user(s, user)
    s.commit()
    if nxt:
        return redirect(nxt)
    if user_is_staff(user):
        return redirect(url_for("admin.index"))
    return redirect(url_for("routes.index"))


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return redirect(url_for("routes.index"))


@bp.get("/auth/verify-email")
def verify_email_page():
    s = db_session()
    try:
        user = consume_token(s, request.args.get("token"), "verify_email")
    except ValidationError as e:
        return render_template("auth/message.html", title="Verificación de correo", message=e.message), 400
    user.email_verified_at = user.email_verified_at or datetime.utcnow()
    record_event(s, actor=user, action="auth.verify_email", entity_type="User", entity_id=str(user.id))
    s.commit()
    return render_template("auth/message.html", title="Verificación de correo", message="¡Tu correo fue verificado!")


@bp.get("/auth/reset-password")
def reset_password_page():
    return render_template("auth/reset_password.html", token=request.args.get("token") or "")


@bp.post("/auth/reset-password")
def reset_password_form():
    s = db_session()
    token = request.form.get("token") or ""
    try:
        _reset_password(s, token, request.form.get("password"))
    except ValidationError as e:
        flash(e.message, "danger")
        return render_template("auth/reset_password.html", token=token), 400
    s.commit()
    flash("Contraseña actualizada. Ya puedes iniciar sesión.", "success")
    return redirect(url_for("auth.login_get"))


def _reset_password(s, token: str | None, password: str | None) -> User:
    errors = validate_password(password)
    if errors:
        raise ValidationError.from_errors(errors)
    user = consume_token(s, token, "reset_password")
    user.password_hash = generate_password_hash(password or "")
    user.updated_at = datetime.utcnow()
    # a team invite doubles as e-mail proof
    user.email_verified_at = user.email_verified_at or datetime.utcnow()
    record_event(s, actor=user, action="auth.reset_password", entity_type="User", entity_id=str(user.id))
    return user


# ---------- JSON API ----------
@bp.post("/api/auth/register")
def api_register():
    s = db_session()
    user, token = register_user(s, json_payload())
    s.commit()
    ok, err = send_verification_email(user.email, user.name, token.token)
    if not ok:
        current_app.logger.warning("Verification e-mail not sent to %s: %s", user.email, err)
    return jsonify({"success": True, "user": serialize_me(user)}), 201


@bp.post("/api/auth/login")
def api_login():
    payload = json_payload()
    s = db_session()
    user = authenticate(s, (payload.get("email") or "").strip().lower(), payload.get("password") or "", request.remote_addr or "unknown")
    login_user(s, user)
    s.commit()
    return jsonify({"success": True, "user": serialize_me(user)})


@bp.post("/api/auth/logout")
def api_logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return jsonify({"success": True})


@bp.get("/api/auth/me")
def api_me():
    user = getattr(g, "current_user", None)
    if not user:
        raise UnauthorizedError()
    return jsonify({"user": serialize_me(user)})


@bp.post("/api/auth/verify-email")
def api_verify_email():
    s = db_session()
    user = consume_token(s, json_payload().get("token"), "verify_email")
    user.email_verified_at = user.email_verified_at or datetime.utcnow()
    record_event(s, actor=user, action="auth.verify_email", entity_type="User", entity_id=str(user.id))
    s.commit()
    return jsonify({"success": True})


@bp.post("/api/auth/resend-verification")
def api_resend_verification():
    s = db_session()
    email = (clean_str(json_payload().get("email")) or "").lower()
    user = s.query(User).filter(User.email == email).one_or_none() if email else None
    if user and user.email_verified_at is None and user.is_active:
        token = issue_token(s, user, "verify_email", VERIFY_TOKEN_TTL)
        s.commit()
        ok, err = send_verification_email(user.email, user.name, token.token)
        if not ok:
            current_app.logger.warning("Verification e-mail not sent to %s: %s", user.email, err)
    # Same answer whether or not the account exists.
    return jsonify({"success": True, "message": "Si la cuenta existe, enviaremos un correo de verificación"})


@bp.post("/api/auth/forgot-password")
def api_forgot_password():
    s = db_session()
    email = (clean_str(json_payload().get("email")) or "").lower()
    user = s.query(User).filter(User.email == email).one_or_none() if email else None
    if user and user.is_active and not user.is_banned:
        token = issue_token(s, user, "reset_password", RESET_TOKEN_TTL)
        s.commit()
        ok, err = send_password_reset_email(user.email, user.name, token.token)
        if not ok:
            current_app.logger.warning("Reset e-mail not sent to %s: %s", user.email, err)
    return jsonify({"success": True, "message": "Si la cuenta existe, enviaremos instrucciones a tu correo"})


@bp.post("/api/auth/reset-password")
def api_reset_password():
    payload = json_payload()
    s = db_session()
    _reset_password(s, payload.get("token"), payload.get("password"))
    s.commit()
    return jsonify({"success": True})


@bp.post("/api/auth/change-password")
@require_login
def api_change_password():
    payload = json_payload()
    user: User = g.current_user
    if user.password_hash and not check_password_hash(user.password_hash, payload.get("current_password") or ""):
        raise ValidationError("La contraseña actual es incorrecta")
    errors = validate_password(payload.get("new_password"))
    if errors:
        raise ValidationError.from_errors(errors)
    s = db_session()
    user.password_hash = generate_password_hash(payload["new_password"])
    user.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="auth.change_password", entity_type="User", entity_id=str(user.id))
    s.commit()
    return jsonify({"success": True})


@bp.put("/api/auth/location")
@require_login
def api_set_location():
    from app.autoexplora.modules.catalog.models import Region

    s = db_session()
    region_id = parse_int(json_payload().get("region_id"))
    if region_id is not None and not s.get(Region, region_id):
        raise ValidationError("Región inválida")
    g.current_user.default_region_id = region_id
    s.commit()
    return jsonify({"success": True, "default_region_id": region_id})


# ---------- Google OAuth ----------
@bp.get("/auth/oauth/google")
def oauth_google_start():
    from app.autoexplora import oauth

    if not current_app.config.get("GOOGLE_CLIENT_ID"):
        flash("El inicio de sesión con Google no está disponible", "danger")
        return redirect(url_for("auth.login_get"))
    state = new_token()
    session["oauth_state"] = state
    session["oauth_next"] = _safe_next(request.args.get("next"))
    return redirect(oauth.google_authorize_url(current_app.config, _google_redirect_uri(), state))


@bp.get("/auth/oauth/google/callback")
def oauth_google_callback():
    from app.autoexplora import oauth

    expected = session.pop("oauth_state", None)
    nxt = session.pop("oauth_next", None)
    if not expected or request.args.get("state") != expected or not request.args.get("code"):
        flash("No se pudo iniciar sesión con Google", "danger")
        return redirect(url_for("auth.login_get"))
    try:
        profile = oauth.google_fetch_profile(current_app.config, request.args["code"], _google_redirect_uri())
    except oauth.OAuthError as e:
        current_app.logger.warning("Google OAuth failed: %s", e)
        flash("No se pudo iniciar sesión con Google", "danger")
        return redirect(url_for("auth.login_get"))

    s = db_session()
    user = oauth.link_or_create_user(s, "google", profile)
    if not user.is_active or user.is_banned:
        s.commit()
        flash("Tu cuenta ha sido suspendida", "danger")
        return redirect(url_for("auth.login_get"))
    login_user(s, user, method="google")
    s.commit()
    return redirect(nxt or url_for("routes.index"))


def _google_redirect_uri() -> str:
    return f"{current_app.config['SITE_URL']}{url_for('auth.oauth_google_callback')}"
