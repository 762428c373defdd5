"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: models/send_limit.py – правила ограничения частоты отправки кодов.

Назначение модуля:
- SendLimit: правило администратора (тип ключа, окно, максимум отправок, приоритет).
- SendCounter: счётчик отправок в текущем окне для пары (правило, ключ);
  уникальность пары позволяет увеличивать счётчик атомарным условным UPDATE.
- SendWhitelist / SendBlacklist: контакты, которые лимиты пропускают или блокируют всегда.
"""

from datetime import datetime

from extensions import db

LIMIT_TYPES = ("phone", "ip", "phone_template", "ip_template", "global")
WILDCARD = "*"


class SendLimit(db.Model):
    """Класс `SendLimit` описывает правило частоты отправки."""
    __tablename__ = "send_limit"

    id = db.Column(db.Integer, primary_key=True)
    limit_name = db.Column(db.String(100), nullable=False)
    template_id = db.Column(db.String(64), nullable=False, default=WILDCARD)
    purpose = db.Column(db.String(32), nullable=False, default=WILDCARD)
    limit_type = db.Column(db.String(20), nullable=False)
    time_window = db.Column(db.Integer, nullable=False)
    max_count = db.Column(db.Integer, nullable=False)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)
    priority = db.Column(db.Integer, nullable=False, default=100)
    description = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "limit_name": self.limit_name,
            "template_id": self.template_id,
            "purpose": self.purpose,
            "limit_type": self.limit_type,
            "time_window": self.time_window,
            "max_count": self.max_count,
            "is_enabled": self.is_enabled,
            "priority": self.priority,
            "description": self.description or "",
        }


class SendCounter(db.Model):
    """Счётчик отправок по правилу в пределах фиксированного окна."""
    __tablename__ = "send_counter"
    __table_args__ = (db.UniqueConstraint("limit_id", "bucket_key"),)

    id = db.Column(db.Integer, primary_key=True)
    # 0 – неявное правило по умолчанию из конфигурации
    limit_id = db.Column(db.Integer, nullable=False, index=True)
    bucket_key = db.Column(db.String(200), nullable=False)
    count = db.Column(db.Integer, nullable=False, default=0)
    window_started_at = db.Column(db.DateTime, nullable=False)
    window_expires_at = db.Column(db.DateTime, nullable=False, index=True)


class _ListedTarget:
    id = db.Column(db.Integer, primary_key=True)
    target = db.Column(db.String(120), unique=True, nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)
    expires_at = db.Column(db.DateTime, nullable=True)
    created_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "target": self.target,
            "reason": self.reason or "",
            "is_enabled": self.is_enabled,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_by": self.created_by,
        }


class SendWhitelist(_ListedTarget, db.Model):
    """Контакты без ограничений частоты."""
    __tablename__ = "send_whitelist"


class SendBlacklist(_ListedTarget, db.Model):
    """Контакты, которым отправка запрещена."""
    __tablename__ = "send_blacklist"
