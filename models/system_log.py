"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: models/system_log.py – журнал аудита операций.
"""

from datetime import datetime

from extensions import db


class SystemLog(db.Model):
    """Класс `SystemLog` описывает событие аудита."""
    __tablename__ = "system_log"

    id = db.Column(db.Integer, primary_key=True)
    level = db.Column(db.String(10), nullable=False, default="info")
    category = db.Column(db.String(32), nullable=False, index=True)
    action = db.Column(db.String(64), nullable=False)
    user_id = db.Column(db.Integer, nullable=True, index=True)
    details = db.Column(db.JSON, nullable=True)
    client_ip = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
