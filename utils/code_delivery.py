"""
Модуль: `utils/code_delivery.py`.
Назначение: Доставка кодов подтверждения через email (SMTP) и HTTP-шлюз SMS.
"""

import json
import smtplib
import ssl
import urllib.error
import urllib.request
from dataclasses import dataclass
from email.message import EmailMessage

from flask import current_app

PURPOSE_TITLES = {
    "register": "注册账号",
    "login": "登录",
    "password_reset": "重置密码",
    "change_phone": "更换手机号",
    "change_email": "更换邮箱",
}


@dataclass
class DeliveryResult:
    sent: bool
    transport: str
    detail: str = ""

    def to_dict(self) -> dict:
        return {"sent": self.sent, "transport": self.transport, "detail": self.detail}


def send_verification_code(channel: str, destination: str, code: str, purpose: str, ttl: int) -> DeliveryResult:
    """Доставляет код; без настроенного транспорта в режиме CODE_DELIVERY_DEBUG код пишется в лог."""
    if channel == "email":
        result = _send_email_code(destination, code, purpose, ttl)
    elif channel == "sms":
        result = _send_sms_code(destination, code, purpose, ttl)
    else:
        return DeliveryResult(False, "none", f"unknown channel {channel}")

    if result is None:
        if current_app.config.get("CODE_DELIVERY_DEBUG"):
            current_app.logger.warning(
                "Транспорт %s не настроен, код для %s (%s): %s", channel, destination, purpose, code
            )
            return DeliveryResult(True, "debug", "transport not configured")
        return DeliveryResult(False, "none", "transport not configured")
    return result


def _send_email_code(email: str, code: str, purpose: str, ttl: int) -> DeliveryResult | None:
    """Служебная функция `_send_email_code`; None – SMTP не настроен."""
    cfg = current_app.config
    host = cfg.get("SMTP_HOST", "").strip()
    sender = cfg.get("SMTP_FROM", "").strip()
    if not host or not sender:
        return None

    port = int(cfg.get("SMTP_PORT", 587))
    use_ssl = bool(cfg.get("SMTP_USE_SSL", False))
    use_tls = bool(cfg.get("SMTP_USE_TLS", True))
    username = cfg.get("SMTP_USER", "").strip()
    password = cfg.get("SMTP_PASSWORD", "")
    title = PURPOSE_TITLES.get(purpose, "身份验证")

    msg = EmailMessage()
    msg["Subject"] = f"【{cfg.get('SMS_SIGNATURE', 'Tongxing')}】{title}验证码"
    msg["From"] = sender
    msg["To"] = email
    msg.set_content(
        (
            f"您正在进行{title}操作。\n"
            f"验证码：{code}\n\n"
            f"验证码 {max(1, ttl // 60)} 分钟内有效。如非本人操作，请忽略本邮件。"
        )
    )

    try:
        if use_ssl:
            with smtplib.SMTP_SSL(host, port, timeout=10, context=ssl.create_default_context()) as client:
                if username:
                    client.login(username, password)
                client.send_message(msg)
        else:
            with smtplib.SMTP(host, port, timeout=10) as client:
                if use_tls:
                    client.starttls(context=ssl.create_default_context())
                if username:
                    client.login(username, password)
                client.send_message(msg)
        return DeliveryResult(True, "smtp")
    except (smtplib.SMTPException, OSError) as exc:
        current_app.logger.exception("Не удалось отправить код на email: %s", email)
        return DeliveryResult(False, "smtp", str(exc))


def _send_sms_code(phone: str, code: str, purpose: str, ttl: int) -> DeliveryResult | None:
    """Служебная функция `_send_sms_code`; None – шлюз не настроен."""
    cfg = current_app.config
    api_url = cfg.get("SMS_API_URL", "").strip()
    if not api_url:
        return None

    token = cfg.get("SMS_API_TOKEN", "").strip()
    signature = cfg.get("SMS_SIGNATURE", "Tongxing").strip() or "Tongxing"
    timeout = int(cfg.get("SMS_API_TIMEOUT", 8))
    payload = {
        "to": phone,
        "template_id": cfg.get("SMS_TEMPLATE_IDS", {}).get(purpose, purpose),
        "params": {"code": code, "minutes": max(1, ttl // 60)},
        "message": f"【{signature}】您的验证码是{code}，{max(1, ttl // 60)}分钟内有效。",
        "sign_name": signature,
    }

    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"

    try:
        request = urllib.request.Request(
            api_url,
            data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        with urllib.request.urlopen(request, timeout=timeout) as response:
            status = getattr(response, "status", 0)
            return DeliveryResult(200 <= status < 300, "sms_api", f"HTTP {status}")
    except (urllib.error.URLError, OSError, ValueError) as exc:
        current_app.logger.exception("Не удалось отправить SMS-код на номер: %s", phone)
        return DeliveryResult(False, "sms_api", str(exc))
