"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: routes/verification.py – публичные API CAPTCHA и кодов подтверждения.

Назначение модуля:
- Выдача несекретных параметров CAPTCHA для сценария.
- Отправка кодов регистрации и входа по SMS и email с проверкой CAPTCHA и лимитов.
- Проверка кода без завершения сценария.
"""

from flask import current_app, request

from models.user_contact import UserContact
from utils.api_response import api_error, json_response, request_json, text_field
from utils.captcha import CaptchaService, check_request_captcha
from utils.contact_normalizer import mask_contact, normalize_email, normalize_phone
from utils.rate_limit import get_client_identifier, is_rate_limited
from utils.system_logger import log_event
from utils.verification_codes import dispatch_code, verify_code

PUBLIC_PURPOSES = ("register", "login")


def _contact_taken(method: str, target: str) -> bool:
    column = UserContact.phone if method == "phone" else UserContact.email
    return UserContact.query.filter(column == target).first() is not None


def send_code_response(channel: str, method: str, target: str, purpose: str, scene: str, data: dict, user_id=None):
    """Общий путь отправки: CAPTCHA → резерв квоты → выдача и доставка кода."""
    client_ip = get_client_identifier()

    captcha = check_request_captcha(scene, data, target, client_ip)
    if not captcha.success:
        return api_error(captcha.message)

    outcome = dispatch_code(channel, target, purpose, client_ip)
    if outcome.rate_limit is not None and not outcome.rate_limit.allowed:
        details = {"target": target, "purpose": purpose, **outcome.rate_limit.to_dict()}
        log_event("send_limit", "rate_limited", level="warning", user_id=user_id, details=details)
        return api_error(outcome.message, 429, outcome.rate_limit.to_dict())
    if not outcome.success:
        return api_error(outcome.message, 500)

    log_event("verification", f"{channel}_code_sent", user_id=user_id, details={"purpose": purpose})
    return json_response(
        True,
        {
            "method": method,
            "target": mask_contact(method, target),
            "expires_in": outcome.record.validity_period,
            "captcha_token": captcha.lot_number,
        },
        outcome.message,
    )


def register_routes(app):
    @app.get("/api/captcha/config")
    def captcha_config():
        scene = (request.args.get("scene") or "register").strip()
        service = CaptchaService()
        try:
            data = service.public_config(service.get_captcha_config(scene))
        except ValueError as exc:
            return api_error(str(exc))
        return json_response(True, data, "获取成功")

    @app.get("/api/captcha/geetest-config")
    def geetest_config():
        scene = (request.args.get("scene") or "register").strip()
        service = CaptchaService()
        config = service.get_captcha_config(scene)
        if config is None or config.provider != "geetest":
            return json_response(True, {"enabled": False, "message": "极验验证未启用"}, "获取成功")
        return json_response(True, service.public_config(config), "获取成功")

    def _send_public_code(method: str):
        data = request_json()
        purpose = text_field(data, "purpose") or "register"
        if purpose not in PUBLIC_PURPOSES:
            return api_error("不支持的验证码用途")

        if method == "phone":
            target = normalize_phone(data.get("phone"))
            if not target:
                return api_error("请输入正确的手机号")
        else:
            target = normalize_email(data.get("email"))
            if not target:
                return api_error("请输入正确的邮箱地址")

        taken = _contact_taken(method, target)
        if purpose == "register" and taken:
            return api_error("该手机号已被注册" if method == "phone" else "该邮箱已被注册")
        if purpose == "login" and not taken:
            return api_error("该手机号未注册" if method == "phone" else "该邮箱未注册")

        channel = "sms" if method == "phone" else "email"
        return send_code_response(channel, method, target, purpose, f"send_{channel}", data)

    @app.post("/api/sms/send-code")
    def sms_send_code():
        return _send_public_code("phone")

    @app.post("/api/email/send-code")
    def email_send_code():
        return _send_public_code("email")

    @app.post("/api/sms/verify-code")
    def sms_verify_code():
        if is_rate_limited("verify_code_ip", limit=30, window_seconds=10 * 60):
            return api_error("验证过于频繁，请稍后再试", 429)

        data = request_json()
        phone = normalize_phone(data.get("phone"))
        purpose = text_field(data, "purpose")
        if not phone:
            return api_error("请输入正确的手机号")
        if not purpose:
            return api_error("缺少验证码用途")

        check = verify_code("sms", phone, purpose, data.get("code"))
        if not check.success:
            current_app.logger.info("Код для %s (%s) не подтверждён: %s", phone, purpose, check.message)
            return api_error(check.message)
        return json_response(True, {"verified": True}, check.message)
