"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: models/captcha.py – настройки провайдеров CAPTCHA и журнал проверок.

Назначение модуля:
- CaptchaConfig: провайдер, ключи и сценарии, для которых он включён.
- CaptchaVerifyLog: результат каждой проверки. Успешная неистёкшая запись служит
  доказательством прохождения проверки и может быть предъявлена повторно.
"""

import json
from datetime import datetime

from extensions import db

CAPTCHA_PROVIDERS = ("local", "geetest", "turnstile", "recaptcha", "hcaptcha")
SECOND_VERIFY_SUFFIX = "_second_verify"


class CaptchaConfig(db.Model):
    """Класс `CaptchaConfig` описывает подключение к провайдеру CAPTCHA."""
    __tablename__ = "captcha_config"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    provider = db.Column(db.String(20), nullable=False)
    captcha_id = db.Column(db.String(128), nullable=True)
    captcha_key = db.Column(db.String(128), nullable=True)
    app_id = db.Column(db.String(128), nullable=True)
    app_secret = db.Column(db.String(255), nullable=True)
    site_key = db.Column(db.String(128), nullable=True)
    secret_key = db.Column(db.String(255), nullable=True)
    scenes = db.Column(db.JSON, nullable=False, default=list)
    priority = db.Column(db.Integer, nullable=False, default=100)
    status = db.Column(db.Integer, nullable=False, default=1)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Ключи с запасными значениями: часть провайдеров заводится через app_id/app_secret
    @property
    def effective_captcha_id(self) -> str:
        return self.captcha_id or self.app_id or ""

    @property
    def effective_captcha_key(self) -> str:
        return self.captcha_key or self.app_secret or ""

    @property
    def effective_site_key(self) -> str:
        return self.site_key or self.app_id or ""

    @property
    def effective_secret_key(self) -> str:
        return self.secret_key or self.app_secret or ""

    def serves_scene(self, scene: str) -> bool:
        return scene in (self.scenes or [])

    def to_dict(self, include_secrets: bool = False) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "captcha_id": self.captcha_id,
            "app_id": self.app_id,
            "site_key": self.site_key,
            "scenes": list(self.scenes or []),
            "priority": self.priority,
            "status": self.status,
            "is_enabled": self.is_enabled,
        }
        if include_secrets:
            data.update(
                captcha_key=self.captcha_key,
                app_secret=self.app_secret,
                secret_key=self.secret_key,
            )
        return data


class CaptchaVerifyLog(db.Model):
    """Запись журнала проверки CAPTCHA (первичной или повторной)."""
    __tablename__ = "captcha_verify_log"

    id = db.Column(db.Integer, primary_key=True)
    config_id = db.Column(db.Integer, db.ForeignKey("captcha_config.id", ondelete="SET NULL"), nullable=True)
    scene = db.Column(db.String(64), nullable=False, index=True)
    provider = db.Column(db.String(20), nullable=False, index=True)
    lot_number = db.Column(db.String(128), nullable=True, index=True)
    captcha_output = db.Column(db.Text, nullable=True)
    pass_token = db.Column(db.String(255), nullable=True)
    gen_time = db.Column(db.String(32), nullable=True)
    challenge = db.Column(db.Text, nullable=True)
    verify_success = db.Column(db.Boolean, nullable=False, default=False)
    verify_result = db.Column(db.Text, nullable=True)
    error_message = db.Column(db.String(255), nullable=True)
    client_ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(20), nullable=True, index=True)
    email = db.Column(db.String(120), nullable=True, index=True)
    original_log_id = db.Column(db.Integer, nullable=True)
    redeemed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    expires_at = db.Column(db.DateTime, nullable=True, index=True)

    @property
    def is_second_verify(self) -> bool:
        return self.scene.endswith(SECOND_VERIFY_SUFFIX)

    def to_dict(self) -> dict:
        try:
            verify_result = json.loads(self.verify_result) if self.verify_result else None
        except ValueError:
            verify_result = self.verify_result
        return {
            "id": self.id,
            "config_id": self.config_id,
            "scene": self.scene,
            "provider": self.provider,
            "lot_number": self.lot_number,
            "challenge": self.challenge,
            "verify_success": self.verify_success,
            "verify_result": verify_result,
            "error_message": self.error_message,
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
            "phone": self.phone,
            "email": self.email,
            "original_log_id": self.original_log_id,
            "redeemed_at": self.redeemed_at.isoformat() if self.redeemed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
