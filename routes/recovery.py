"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: routes/recovery.py – восстановление забытого пароля без входа в систему.

Назначение модуля:
- Отправка кода на телефон или email найденной учётной записи; CAPTCHA сценария
  reset_password обязательна, отправка проходит через общие лимиты.
- Проверка кода с повторным предъявлением CAPTCHA и выдача токена сессии проверки.
- Установка нового пароля по токену сессии с отзывом всех входов пользователя.
"""

from dataclasses import dataclass

from flask_login import current_user, logout_user

from models.user import User
from models.user_contact import UserContact
from routes.account import METHOD_CHANNELS, complete_password_reset, session_payload
from routes.auth import validate_password
from routes.verification import send_code_response
from utils.api_response import api_error, json_response, request_json, text_field
from utils.captcha import CaptchaService, captcha_payload, check_request_captcha
from utils.contact_normalizer import normalize_contact
from utils.rate_limit import get_client_identifier, is_rate_limited
from utils.system_logger import log_event
from utils.verification_codes import is_completable, verify_code
from utils.verification_session import load_session, open_session, session_code

CAPTCHA_SCENE = "reset_password"
SESSION_PURPOSE = "forgot_password"


@dataclass
class RecoveryAccount:
    method: str
    target: str
    user: User


def _resolve_account(data: dict):
    """Находит учётную запись по `account` и `account_type`; возвращает (аккаунт, ответ с ошибкой)."""
    method = text_field(data, "account_type").lower()
    if method not in METHOD_CHANNELS:
        return None, api_error("账号类型参数错误")

    target = normalize_contact(method, data.get("account"))
    if not target:
        return None, api_error("请输入正确的手机号" if method == "phone" else "请输入正确的邮箱地址")

    column = UserContact.phone if method == "phone" else UserContact.email
    contact = UserContact.query.filter(column == target).first()
    if contact is None:
        return None, api_error("该账号不存在", 404)
    if not contact.user.is_active:
        return None, api_error("账户状态异常，无法重置密码", 403)
    return RecoveryAccount(method, target, contact.user), None


def _captcha_unavailable():
    return api_error("人机验证服务暂时不可用", 503)


def register_routes(app):
    @app.post("/api/password/forgot/send-code")
    def forgot_send_code():
        data = request_json()
        if CaptchaService().get_captcha_config(CAPTCHA_SCENE) is None:
            return _captcha_unavailable()

        account, error = _resolve_account(data)
        if error:
            return error

        channel = METHOD_CHANNELS[account.method]
        return send_code_response(
            channel, account.method, account.target, "password_reset", CAPTCHA_SCENE, data, user_id=account.user.id
        )

    @app.post("/api/password/forgot/verify-code")
    def forgot_verify_code():
        if is_rate_limited("forgot_verify_ip", limit=15, window_seconds=15 * 60):
            return api_error("验证过于频繁，请稍后再试", 429)

        data = request_json()
        captcha_service = CaptchaService()
        captcha_config = captcha_service.get_captcha_config(CAPTCHA_SCENE)
        if captcha_config is None:
            return _captcha_unavailable()

        account, error = _resolve_account(data)
        if error:
            return error

        # Токен со шага отправки кода или новая проверка CAPTCHA
        client_ip = get_client_identifier()
        captcha_token = text_field(data, "captcha_token")
        if captcha_token:
            captcha = captcha_service.verify_second_time(
                captcha_token, account.target, captcha_config.provider, CAPTCHA_SCENE, client_ip
            )
        elif captcha_payload(data):
            captcha = check_request_captcha(CAPTCHA_SCENE, data, account.target, client_ip)
        else:
            return api_error("请完成人机验证")
        if not captcha.success:
            return api_error(captcha.message)

        check = verify_code(METHOD_CHANNELS[account.method], account.target, "password_reset", data.get("code"))
        if not check.success:
            log_event(
                "forgot_password",
                "code_rejected",
                level="warning",
                user_id=account.user.id,
                details={"account_type": account.method, "reason": check.message},
            )
            return api_error(check.message)

        token = open_session(account.user.id, SESSION_PURPOSE, account.method, account.target, check.record)
        return json_response(True, {**session_payload(token), "account_type": account.method}, "验证成功")

    @app.post("/api/password/forgot/reset")
    def forgot_reset():
        data = request_json()
        new_password = text_field(data, "new_password", strip=False)
        password_error = validate_password(new_password)
        if password_error:
            return api_error(password_error)

        account, error = _resolve_account(data)
        if error:
            return error

        session_row = load_session(text_field(data, "token"), account.user.id, SESSION_PURPOSE)
        if session_row is None:
            return api_error("验证已过期，请重新验证", 401)
        if session_row.method != account.method or session_row.target != account.target:
            return api_error("账号信息不匹配")

        record = session_code(session_row)
        if not is_completable(record):
            return api_error("验证码已失效，请重新获取")

        user = account.user
        complete_password_reset(user, session_row, record, new_password)
        if current_user.is_authenticated and current_user.id == user.id:
            logout_user()

        log_event(
            "forgot_password",
            "password_reset",
            user_id=user.id,
            details={"account_type": account.method, "client_ip": get_client_identifier()},
        )
        return json_response(True, None, "密码重置成功")
