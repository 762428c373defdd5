"""
Модуль: `utils/cleanup.py`.
Назначение: Очистка устаревших служебных записей (сессии проверок, счётчики лимитов, токены).

Коды подтверждения и журнал CAPTCHA не удаляются: они служат журналом аудита.
"""

from datetime import datetime, timedelta

from sqlalchemy import or_

from extensions import db
from models.auth_token import TOKEN_STATUS_ACTIVE, AuthToken
from models.send_limit import SendCounter
from models.verification_session import VerificationSession


def cleanup_expired_records(days: int = 7, now: datetime | None = None) -> dict[str, int]:
    """Удаляет устаревшие служебные записи и возвращает число удалённых строк по таблицам.

    Отозванные и истёкшие токены хранятся `days` дней после последнего изменения.
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=days)

    sessions = VerificationSession.query.filter(
        or_(VerificationSession.expires_at <= now, VerificationSession.used_at.isnot(None))
    ).delete(synchronize_session=False)

    counters = SendCounter.query.filter(SendCounter.window_expires_at <= now).delete(synchronize_session=False)

    tokens = AuthToken.query.filter(
        or_(AuthToken.status != TOKEN_STATUS_ACTIVE, AuthToken.expires_at <= now),
        AuthToken.updated_at < cutoff,
    ).delete(synchronize_session=False)

    db.session.commit()
    return {"verification_sessions": sessions, "send_counters": counters, "auth_tokens": tokens}
