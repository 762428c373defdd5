"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: models/verification_session.py – промежуточное состояние многошаговых проверок.

Запись связывает подписанный токен, выданный клиенту после подтверждения кода,
с пользователем, сценарием и строкой кода, которую следующий шаг проверяет повторно.
"""

from datetime import datetime

from extensions import db


class VerificationSession(db.Model):
    """Класс `VerificationSession` хранит прогресс сценария (сброс пароля, смена контакта)."""
    __tablename__ = "verification_session"

    id = db.Column(db.Integer, primary_key=True)
    token_hash = db.Column(db.String(64), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    purpose = db.Column(db.String(32), nullable=False)
    method = db.Column(db.String(10), nullable=False)
    target = db.Column(db.String(120), nullable=False)
    code_channel = db.Column(db.String(10), nullable=False)
    code_id = db.Column(db.String(64), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    used_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
