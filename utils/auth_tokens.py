"""
Модуль: `utils/auth_tokens.py`.
Назначение: Выдача, поиск и отзыв серверных токенов входа, доступа и обновления.
"""

import secrets
from datetime import datetime, timedelta

from flask import current_app

from extensions import db
from models.auth_token import (
    TOKEN_STATUS_ACTIVE,
    TOKEN_STATUS_FORCE_CLOSED,
    TOKEN_STATUS_LOGGED_OUT,
    AuthToken,
)

_TTL_KEYS = {
    "login": "LOGIN_TOKEN_TTL_SECONDS",
    "access": "ACCESS_TOKEN_TTL_SECONDS",
    "refresh": "REFRESH_TOKEN_TTL_SECONDS",
}


def issue_token(user_id: int, kind: str, client_ip: str | None = None, now: datetime | None = None) -> AuthToken:
    """Создаёт токен указанного вида; транзакцию фиксирует вызывающий код."""
    now = now or datetime.utcnow()
    ttl = int(current_app.config[_TTL_KEYS[kind]])
    token = AuthToken(
        token=secrets.token_urlsafe(48),
        kind=kind,
        user_id=user_id,
        status=TOKEN_STATUS_ACTIVE,
        client_ip=client_ip,
        expires_at=now + timedelta(seconds=ttl),
    )
    db.session.add(token)
    return token


def issue_bearer_pair(user_id: int, client_ip: str | None = None) -> dict:
    access = issue_token(user_id, "access", client_ip)
    refresh = issue_token(user_id, "refresh", client_ip)
    return {
        "access_token": access.token,
        "refresh_token": refresh.token,
        "token_type": "Bearer",
        "expires_in": int(current_app.config["ACCESS_TOKEN_TTL_SECONDS"]),
    }


def find_usable_token(value: str | None, kind: str) -> AuthToken | None:
    if not value:
        return None
    token = AuthToken.query.filter_by(token=value, kind=kind).first()
    if token is None or not token.is_usable():
        return None
    return token


def revoke_token(token: AuthToken) -> None:
    token.status = TOKEN_STATUS_LOGGED_OUT


def revoke_user_tokens(user_id: int) -> None:
    """Завершает все активные сессии пользователя (вход – принудительно, Bearer – как выход)."""
    AuthToken.query.filter(
        AuthToken.user_id == user_id,
        AuthToken.kind == "login",
        AuthToken.status == TOKEN_STATUS_ACTIVE,
    ).update({AuthToken.status: TOKEN_STATUS_FORCE_CLOSED}, synchronize_session=False)
    AuthToken.query.filter(
        AuthToken.user_id == user_id,
        AuthToken.kind.in_(("access", "refresh")),
        AuthToken.status == TOKEN_STATUS_ACTIVE,
    ).update({AuthToken.status: TOKEN_STATUS_LOGGED_OUT}, synchronize_session=False)
