"""
Модуль: `models/__init__.py`.
Назначение: Импорт моделей для корректной регистрации в SQLAlchemy metadata.
"""

from .user import User
from .user_contact import UserContact
from .auth_token import AuthToken
from .verification_code import CodeStatus, EmailCode, SmsCode
from .verification_session import VerificationSession
from .send_limit import SendBlacklist, SendCounter, SendLimit, SendWhitelist
from .captcha import CaptchaConfig, CaptchaVerifyLog
from .system_log import SystemLog

__all__ = [
    "User",
    "UserContact",
    "AuthToken",
    "CodeStatus",
    "SmsCode",
    "EmailCode",
    "VerificationSession",
    "SendLimit",
    "SendCounter",
    "SendWhitelist",
    "SendBlacklist",
    "CaptchaConfig",
    "CaptchaVerifyLog",
    "SystemLog",
]
