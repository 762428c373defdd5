"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: models/user.py – модель пользователя системы.

Назначение модуля:
- Описание ORM-модели User (логин, хеш пароля, роль, статус учётной записи).
- Привязка идентификатора Flask-Login к серверному токену входа, чтобы отзыв токена завершал сессию.
"""

import uuid
from datetime import datetime

from flask_login import UserMixin
from extensions import db

USER_STATUS_ACTIVE = 1
USER_STATUS_BANNED = 2

ADMIN_ROLES = frozenset({"admin", "siteadmin"})


class User(UserMixin, db.Model):
    """Класс `User` описывает учётную запись портала."""
    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4()))
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="user")
    status = db.Column(db.Integer, nullable=False, default=USER_STATUS_ACTIVE)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    contact = db.relationship(
        "UserContact",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )

    # Токен входа текущего запроса; выставляется при логине и в user_loader
    session_token = None

    def get_id(self):
        return self.session_token

    @property
    def is_active(self):
        return self.status == USER_STATUS_ACTIVE

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def to_dict(self) -> dict:
        contact = self.contact
        return {
            "uuid": self.uuid,
            "username": self.username,
            "role": self.role,
            "status": self.status,
            "phone": contact.phone if contact else None,
            "email": contact.email if contact else None,
        }
