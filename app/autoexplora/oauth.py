"""Google sign-in (authorization code flow)."""
from __future__ import annotations

import urllib.parse
from datetime import datetime
from typing import Any

import requests
from sqlalchemy.orm import Session

from app.autoexplora.audit import record_event
from app.autoexplora.models import OAuthAccount, User

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
TIMEOUT_SECONDS = 10


class OAuthError(RuntimeError):
    pass


def google_authorize_url(config: dict, redirect_uri: str, state: str) -> str:
    params = {
        "client_id": config["GOOGLE_CLIENT_ID"],
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": "openid email profile",
        "state": state,
        "prompt": "select_account",
    }
    return f"{GOOGLE_AUTH_URL}?{urllib.parse.urlencode(params)}"


def google_fetch_profile(config: dict, code: str, redirect_uri: str) -> dict[str, Any]:
    """Exchange the code and return the OpenID userinfo payload (sub, email, name, picture, ...)."""
    try:
        resp = requests.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": config["GOOGLE_CLIENT_ID"],
                "client_secret": config["GOOGLE_CLIENT_SECRET"],
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            timeout=TIMEOUT_SECONDS,
        )
        if resp.status_code != 200:
            raise OAuthError(f"HTTP {resp.status_code} from token endpoint: {resp.text[:300]}")
        access_token = resp.json().get("access_token")
        if not access_token:
            raise OAuthError("No access_token in token response")
        info = requests.get(GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}, timeout=TIMEOUT_SECONDS)
        if info.status_code != 200:
            raise OAuthError(f"HTTP {info.status_code} from userinfo endpoint")
        profile = info.json()
    except (requests.RequestException, ValueError) as e:
        raise OAuthError(str(e)) from e
    if not profile.get("sub") or not profile.get("email"):
        raise OAuthError("Incomplete Google profile")
    if profile.get("email_verified") is False:
        raise OAuthError("Google e-mail not verified")
    return profile


def link_or_create_user(s: Session, provider: str, profile: dict[str, Any]) -> User:
    """
    Find the user by linked account, else by e-mail (linking it), else create one.
    Google has already verified the e-mail, so it is marked verified. Caller commits.
    """
    account_id = str(profile["sub"])
    account = (
        s.query(OAuthAccount)
        .filter(OAuthAccount.provider == provider, OAuthAccount.provider_account_id == account_id)
        .one_or_none()
    )
    if account:
        return account.user

    email = str(profile["email"]).strip().lower()
    user = s.query(User).filter(User.email == email).one_or_none()
    created = user is None
    if created:
        user = User(email=email, name=profile.get("name"), image=profile.get("picture"), password_hash=None, is_active=True)
        s.add(user)
        s.flush()
    if user.email_verified_at is None:
        user.email_verified_at = datetime.utcnow()
    if not user.image and profile.get("picture"):
        user.image = profile["picture"]
    s.add(OAuthAccount(user_id=user.id, provider=provider, provider_account_id=account_id))
    record_event(
        s,
        actor=user,
        action="auth.oauth_link",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"provider": provider, "new_user": created},
    )
    return user
