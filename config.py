"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: config.py – конфигурация приложения.

Назначение модуля:
- Определение базовых параметров Flask (секретный ключ, строка подключения к БД, часовой пояс).
- Параметры жизненного цикла кодов подтверждения, сессий верификации и доказательств CAPTCHA.
- Явные флаги политик «fail-open»: обязательность CAPTCHA и лимит по умолчанию.
- Настройки доставки кодов (SMTP и HTTP-шлюз SMS).
"""

import os
import warnings


def _get_env_bool(name: str, default: bool = False) -> bool:
    """Преобразует переменную окружения в bool."""
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_env_int(name: str, default: int) -> int:
    """Преобразует переменную окружения в int."""
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _get_env_list(name: str, default: list[str] | None = None) -> list[str]:
    """Преобразует переменную окружения вида 'a,b,c' в список."""
    value = os.environ.get(name)
    if value is None:
        return list(default or [])
    return [item.strip() for item in value.split(",") if item.strip()]


def _get_env_mapping(name: str, default: dict[str, str]) -> dict[str, str]:
    """Преобразует переменную окружения вида 'a=x,b=y' в словарь."""
    mapping = dict(default)
    for item in _get_env_list(name):
        key, sep, value = item.partition("=")
        if sep and key.strip() and value.strip():
            mapping[key.strip()] = value.strip()
    return mapping


def _is_production() -> bool:
    """Определяет production-режим по FLASK_ENV."""
    return os.environ.get("FLASK_ENV", "").strip().lower() == "production"


def parse_rate_limit(value: str | None) -> tuple[int, int] | None:
    """Разбирает правило вида '<max_count>/<seconds>'; пустое значение – правила нет."""
    if not value or not value.strip():
        return None
    count, sep, window = value.strip().partition("/")
    if not sep:
        raise ValueError(f"Invalid rate limit rule: {value!r}")
    max_count, time_window = int(count), int(window)
    if max_count <= 0 or time_window <= 0:
        raise ValueError(f"Invalid rate limit rule: {value!r}")
    return max_count, time_window


class Config:
    """Базовая конфигурация приложения."""

    _PRODUCTION = _is_production()

    SECRET_KEY = os.environ.get("SECRET_KEY")
    if not SECRET_KEY:
        if _PRODUCTION:
            raise RuntimeError(
                "SECRET_KEY environment variable is required in production. "
                "Set a strong random value before starting the app."
            )
        SECRET_KEY = "dev-insecure-secret-key"
        warnings.warn(
            "SECRET_KEY is not set. Using insecure development fallback key.",
            RuntimeWarning,
            stacklevel=1,
        )

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "postgresql+psycopg://tongxing@localhost/tongxing" if _PRODUCTION else "sqlite:///tongxing.db",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    TIMEZONE = os.environ.get("TIMEZONE", "Asia/Shanghai").strip() or "Asia/Shanghai"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    SESSION_COOKIE_SECURE = _get_env_bool("SESSION_COOKIE_SECURE", default=_PRODUCTION)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.environ.get("SESSION_COOKIE_SAMESITE", "Lax")
    REMEMBER_COOKIE_SECURE = SESSION_COOKIE_SECURE
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = SESSION_COOKIE_SAMESITE
    CSRF_ENABLED = _get_env_bool("CSRF_ENABLED", default=True)

    CORS_ENABLED = _get_env_bool("CORS_ENABLED", default=False)
    CORS_ORIGINS = _get_env_list(
        "CORS_ORIGINS",
        default=[
            "http://127.0.0.1:5000",
            "http://localhost:5000",
        ],
    )

    # Коды подтверждения
    CODE_TTL_SECONDS = _get_env_int("CODE_TTL_SECONDS", 600)
    CODE_MAX_VERIFY_ATTEMPTS = _get_env_int("CODE_MAX_VERIFY_ATTEMPTS", 5)
    VERIFICATION_SESSION_TTL_SECONDS = _get_env_int("VERIFICATION_SESSION_TTL_SECONDS", 600)
    SMS_TEMPLATE_IDS = _get_env_mapping(
        "SMS_TEMPLATE_IDS",
        default={
            "register": "SMS_REGISTER",
            "login": "SMS_LOGIN",
            "password_reset": "SMS_PASSWORD_RESET",
            "change_phone": "SMS_CHANGE_PHONE",
            "change_email": "SMS_CHANGE_EMAIL",
        },
    )

    # Лимиты отправки. Пустое значение сохраняет политику «нет правил – отправка разрешена».
    DEFAULT_RATE_LIMIT = os.environ.get("DEFAULT_RATE_LIMIT", "").strip()

    # Человеко-машинная проверка
    REQUIRE_CAPTCHA = _get_env_bool("REQUIRE_CAPTCHA", default=False)
    CAPTCHA_PROOF_SINGLE_USE = _get_env_bool("CAPTCHA_PROOF_SINGLE_USE", default=False)
    CAPTCHA_PROOF_TTL_SECONDS = _get_env_int("CAPTCHA_PROOF_TTL_SECONDS", 900)
    CAPTCHA_HTTP_TIMEOUT = _get_env_int("CAPTCHA_HTTP_TIMEOUT", 10)

    # Токены доступа
    ACCESS_TOKEN_TTL_SECONDS = _get_env_int("ACCESS_TOKEN_TTL_SECONDS", 2 * 60 * 60)
    REFRESH_TOKEN_TTL_SECONDS = _get_env_int("REFRESH_TOKEN_TTL_SECONDS", 30 * 24 * 60 * 60)
    LOGIN_TOKEN_TTL_SECONDS = _get_env_int("LOGIN_TOKEN_TTL_SECONDS", 7 * 24 * 60 * 60)

    SMTP_HOST = os.environ.get("SMTP_HOST", "").strip()
    SMTP_PORT = _get_env_int("SMTP_PORT", 587)
    SMTP_USER = os.environ.get("SMTP_USER", "").strip()
    SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD", "")
    SMTP_FROM = os.environ.get("SMTP_FROM", "").strip()
    SMTP_USE_TLS = _get_env_bool("SMTP_USE_TLS", default=True)
    SMTP_USE_SSL = _get_env_bool("SMTP_USE_SSL", default=False)

    SMS_API_URL = os.environ.get("SMS_API_URL", "").strip()
    SMS_API_TOKEN = os.environ.get("SMS_API_TOKEN", "").strip()
    SMS_SIGNATURE = os.environ.get("SMS_SIGNATURE", "Tongxing").strip() or "Tongxing"
    SMS_API_TIMEOUT = _get_env_int("SMS_API_TIMEOUT", 8)
    # Без транспорта код пишется в лог; только для разработки
    CODE_DELIVERY_DEBUG = _get_env_bool("CODE_DELIVERY_DEBUG", default=not _PRODUCTION)

    SUPPORTED_LANGUAGES = ("zh", "en")
    DEFAULT_LANGUAGE = os.environ.get("DEFAULT_LANGUAGE", "zh").strip().lower() or "zh"
    LANG_COOKIE_NAME = os.environ.get("LANG_COOKIE_NAME", "site_lang").strip() or "site_lang"
    BABEL_DEFAULT_LOCALE = DEFAULT_LANGUAGE
    BABEL_DEFAULT_TIMEZONE = TIMEZONE
