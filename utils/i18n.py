"""
Модуль: `utils/i18n.py`.
Назначение: Выбор языка ответа и представление времени в часовом поясе портала.
"""

from __future__ import annotations

from datetime import datetime

from flask import Request
from flask_babel import to_user_timezone


def is_supported_language(lang: str | None, supported_languages: tuple[str, ...]) -> bool:
    """Язык входит в список поддерживаемых порталом."""
    if not lang:
        return False
    return lang.strip().lower() in supported_languages


def _normalize_language(lang: str | None, supported_languages: tuple[str, ...], default_language: str) -> str:
    if not lang:
        return default_language
    normalized = lang.strip().lower()
    if normalized in supported_languages:
        return normalized
    return default_language


def resolve_request_language(
    request: Request,
    supported_languages: tuple[str, ...],
    cookie_name: str,
    default_language: str,
) -> str:
    """Язык из параметра `lang`, cookie или Accept-Language (в этом порядке)."""
    default = _normalize_language(default_language, supported_languages, supported_languages[0])

    query_lang = request.args.get("lang")
    if is_supported_language(query_lang, supported_languages):
        return query_lang.strip().lower()

    cookie_lang = request.cookies.get(cookie_name)
    if is_supported_language(cookie_lang, supported_languages):
        return cookie_lang.strip().lower()

    preferred = request.accept_languages.best_match(supported_languages)
    if preferred:
        return preferred

    return default


def local_isoformat(value: datetime | None) -> str | None:
    """Переводит наивное UTC-время в часовой пояс портала."""
    if value is None:
        return None
    return to_user_timezone(value).isoformat()
