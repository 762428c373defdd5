"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: models/verification_code.py – коды подтверждения SMS и email.

Назначение модуля:
- Отдельная таблица для каждого канала (`sms_code`, `email_code`) с общим набором колонок.
- Статусы кода: выдан → подтверждён → повторно подтверждён / использован.
  Истечение срока не хранится, а вычисляется при чтении по `expires_at`.
- Записи не удаляются и служат журналом отправок.
"""

from datetime import datetime
from enum import IntEnum

from sqlalchemy.orm import declared_attr

from extensions import db


class CodeStatus(IntEnum):
    """Статус кода подтверждения (целочисленные значения совместимы с историческими данными)."""
    CONSUMED = 0
    ISSUED = 1
    SEND_FAILED = 2
    FIRST_VERIFIED = 3
    SECOND_VERIFIED = 4


class VerificationCodeMixin:
    """Общие колонки и поведение кодов подтверждения обоих каналов."""

    channel_name = ""
    target_column = ""

    id = db.Column(db.Integer, primary_key=True)
    code_id = db.Column(db.String(64), unique=True, nullable=False)
    code = db.Column(db.String(6), nullable=False)
    purpose = db.Column(db.String(32), nullable=False, index=True)
    status = db.Column(db.Integer, nullable=False, default=int(CodeStatus.ISSUED), index=True)
    validity_period = db.Column(db.Integer, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    channel = db.Column(db.String(32), nullable=False, default="system")
    template_id = db.Column(db.String(64), nullable=True)
    client_ip = db.Column(db.String(64), nullable=True)
    verify_count = db.Column(db.Integer, nullable=False, default=0)
    last_verify_at = db.Column(db.DateTime, nullable=True)
    send_result = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @declared_attr
    def __table_args__(cls):
        return (db.Index(f"ix_{cls.__tablename__}_target_purpose", cls.target_column, "purpose", "created_at"),)

    @property
    def target(self) -> str:
        return getattr(self, self.target_column)

    @property
    def code_status(self) -> CodeStatus:
        return CodeStatus(self.status)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at


class SmsCode(VerificationCodeMixin, db.Model):
    """Код подтверждения, отправленный по SMS."""
    __tablename__ = "sms_code"

    channel_name = "sms"
    target_column = "phone"

    phone = db.Column(db.String(20), nullable=False)


class EmailCode(VerificationCodeMixin, db.Model):
    """Код подтверждения, отправленный на email."""
    __tablename__ = "email_code"

    channel_name = "email"
    target_column = "email"

    email = db.Column(db.String(120), nullable=False)


CODE_MODELS = {
    "sms": SmsCode,
    "email": EmailCode,
}
