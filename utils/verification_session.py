"""
Модуль: `utils/verification_session.py`.
Назначение: Серверные сессии многошаговых проверок.

Клиент получает случайный токен; в базе хранится только его HMAC-SHA256 под SECRET_KEY.
Сессия привязана к пользователю и сценарию, ограничена по времени и закрывается
на последнем шаге.
"""

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta

from flask import current_app

from extensions import db
from models.verification_code import CODE_MODELS
from models.verification_session import VerificationSession


def hash_session_token(token: str) -> str:
    key = str(current_app.config["SECRET_KEY"]).encode("utf-8")
    return hmac.new(key, token.encode("utf-8"), hashlib.sha256).hexdigest()


def open_session(user_id: int, purpose: str, method: str, target: str, code_record, now: datetime | None = None) -> str:
    """Открывает сессию после подтверждения кода и возвращает токен для клиента.

    Незакрытые сессии пользователя для того же сценария закрываются.
    """
    now = now or datetime.utcnow()
    ttl = int(current_app.config.get("VERIFICATION_SESSION_TTL_SECONDS", 600))
    VerificationSession.query.filter(
        VerificationSession.user_id == user_id,
        VerificationSession.purpose == purpose,
        VerificationSession.used_at.is_(None),
    ).update({VerificationSession.used_at: now}, synchronize_session=False)

    token = secrets.token_urlsafe(32)
    db.session.add(
        VerificationSession(
            token_hash=hash_session_token(token),
            user_id=user_id,
            purpose=purpose,
            method=method,
            target=target,
            code_channel=code_record.channel_name,
            code_id=code_record.code_id,
            expires_at=now + timedelta(seconds=ttl),
            created_at=now,
        )
    )
    db.session.commit()
    return token


def load_session(token: str | None, user_id: int, purpose: str, now: datetime | None = None) -> VerificationSession | None:
    """Возвращает действующую сессию; чужая, закрытая или истёкшая – None."""
    if not token or not isinstance(token, str):
        return None
    now = now or datetime.utcnow()
    return VerificationSession.query.filter(
        VerificationSession.token_hash == hash_session_token(token),
        VerificationSession.user_id == user_id,
        VerificationSession.purpose == purpose,
        VerificationSession.used_at.is_(None),
        VerificationSession.expires_at > now,
    ).first()


def session_code(row: VerificationSession):
    """Строка кода, подтверждение которого открыло сессию."""
    model = CODE_MODELS.get(row.code_channel)
    if model is None:
        return None
    return model.query.filter_by(code_id=row.code_id).first()


def close_session(row: VerificationSession, now: datetime | None = None) -> None:
    row.used_at = now or datetime.utcnow()
