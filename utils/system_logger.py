"""
Модуль: `utils/system_logger.py`.
Назначение: Запись событий аудита в лог приложения и в таблицу system_log.
"""

import logging

from flask import current_app, has_request_context

from extensions import db
from models.system_log import SystemLog
from utils.rate_limit import get_client_identifier

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def log_event(category: str, action: str, level: str = "info", user_id=None, details: dict | None = None) -> None:
    """Пишет событие в лог приложения и сохраняет строку SystemLog (с коммитом)."""
    current_app.logger.log(
        _LEVELS.get(level, logging.INFO),
        "[%s] %s user=%s %s",
        category,
        action,
        user_id,
        details or {},
    )
    db.session.add(
        SystemLog(
            level=level,
            category=category,
            action=action,
            user_id=user_id,
            details=details,
            client_ip=get_client_identifier() if has_request_context() else None,
        )
    )
    db.session.commit()
