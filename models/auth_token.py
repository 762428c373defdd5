"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: models/auth_token.py – токены входа, доступа и обновления.

Назначение модуля:
- Хранение серверных токенов трёх видов: login (сессия браузера), access и refresh (Bearer).
- Статусы позволяют массово завершить все сессии пользователя после смены пароля.
"""

from datetime import datetime

from extensions import db

TOKEN_KINDS = ("login", "access", "refresh")

TOKEN_STATUS_ACTIVE = 1
TOKEN_STATUS_LOGGED_OUT = 2
TOKEN_STATUS_FORCE_CLOSED = 3


class AuthToken(db.Model):
    """Класс `AuthToken` описывает выданный пользователю токен."""
    __tablename__ = "auth_token"

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(128), unique=True, nullable=False)
    kind = db.Column(db.String(10), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    status = db.Column(db.Integer, nullable=False, default=TOKEN_STATUS_ACTIVE, index=True)
    client_ip = db.Column(db.String(64), nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = db.relationship("User")

    def is_usable(self, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        return self.status == TOKEN_STATUS_ACTIVE and self.expires_at > now
