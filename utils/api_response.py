"""
Модуль: `utils/api_response.py`.
Назначение: Единый JSON-конверт ответов API: success, data, message, timestamp.
"""

import time

from flask import jsonify, request


def json_response(success: bool, data=None, message: str = "", status: int = 200):
    return (
        jsonify(
            {
                "success": success,
                "data": data,
                "message": message,
                "timestamp": int(time.time()),
            }
        ),
        status,
    )


def api_error(message: str, status: int = 400, data=None):
    return json_response(False, data, message, status)


def api_ok(data=None, message: str = "操作成功"):
    return json_response(True, data, message, 200)


def request_json() -> dict:
    """Тело запроса как словарь; некорректный JSON считается пустым телом."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def text_field(data: dict, name: str, strip: bool = True) -> str:
    """Строковое поле тела запроса.

    Целые числа (например, `"code": 123456`) приводятся к строке, значения
    других типов считаются отсутствующими.
    """
    value = data.get(name)
    if isinstance(value, bool):
        return ""
    if isinstance(value, int):
        return str(value)
    if not isinstance(value, str):
        return ""
    return value.strip() if strip else value
