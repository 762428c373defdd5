"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: models/user_contact.py – подтверждённые контакты пользователя (телефон и email).
"""

from datetime import datetime

from extensions import db


class UserContact(db.Model):
    """Класс `UserContact` хранит телефон и email, на которые уходят коды подтверждения."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, unique=True)
    email = db.Column(db.String(120), unique=True, nullable=True, index=True)
    phone = db.Column(db.String(20), unique=True, nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    user = db.relationship("User", back_populates="contact")

    def target_for(self, method: str) -> str:
        """Возвращает контакт для способа подтверждения `phone` или `email`."""
        if method == "phone":
            return self.phone or ""
        if method == "email":
            return self.email or ""
        return ""
