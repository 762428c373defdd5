"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: routes/account.py – сценарии личного кабинета, защищённые кодами подтверждения.

Назначение модуля:
- Сброс пароля: отправка кода → проверка (токен сессии проверки) → новый пароль.
- Смена телефона и email: код на старый контакт → проверка → код на новый контакт → смена.
Промежуточное состояние хранится в таблице verification_session, а не в cookie-сессии.
"""

from datetime import datetime

from flask import current_app
from flask_login import current_user, login_required, logout_user
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash

from extensions import db
from models.user_contact import UserContact
from models.verification_code import CodeStatus
from routes.auth import validate_password
from routes.verification import send_code_response
from utils.api_response import api_error, json_response, request_json, text_field
from utils.auth_tokens import revoke_user_tokens
from utils.contact_normalizer import mask_contact, normalize_contact
from utils.rate_limit import is_rate_limited
from utils.system_logger import log_event
from utils.verification_codes import (
    consume_code,
    is_completable,
    mark_second_verified,
    verify_code,
)
from utils.verification_session import close_session, load_session, open_session, session_code

METHOD_CHANNELS = {"phone": "sms", "email": "email"}
CONTACT_LABELS = {"phone": "手机号", "email": "邮箱"}


def _current_target(method: str) -> str:
    contact = current_user.contact
    return contact.target_for(method) if contact else ""


def session_payload(token: str) -> dict:
    return {"token": token, "expires_in": int(current_app.config["VERIFICATION_SESSION_TTL_SECONDS"])}


def complete_password_reset(user, session_row, record, new_password: str) -> None:
    """Пароль, отзыв токенов, использование кода и закрытие сессии фиксируются одной транзакцией."""
    user.password_hash = generate_password_hash(new_password, method="scrypt")
    revoke_user_tokens(user.id)
    consume_code(record)
    close_session(session_row)
    db.session.commit()


def register_routes(app):
    @app.post("/api/account/password/send-code")
    @login_required
    def password_send_code():
        data = request_json()
        method = text_field(data, "method").lower()
        if method not in METHOD_CHANNELS:
            return api_error("请选择验证方式：手机或邮箱")

        target = _current_target(method)
        if not target:
            return api_error(f"账号未绑定{CONTACT_LABELS[method]}")

        channel = METHOD_CHANNELS[method]
        return send_code_response(
            channel, method, target, "password_reset", f"send_{channel}", data, user_id=current_user.id
        )

    @app.post("/api/account/password/verify-code")
    @login_required
    def password_verify_code():
        if is_rate_limited("password_verify", limit=15, window_seconds=15 * 60, identity=str(current_user.id)):
            return api_error("验证过于频繁，请稍后再试", 429)

        data = request_json()
        method = text_field(data, "method").lower()
        if method not in METHOD_CHANNELS:
            return api_error("请选择验证方式：手机或邮箱")
        target = _current_target(method)
        if not target:
            return api_error(f"账号未绑定{CONTACT_LABELS[method]}")

        check = verify_code(METHOD_CHANNELS[method], target, "password_reset", data.get("code"))
        if not check.success:
            return api_error(check.message)

        token = open_session(current_user.id, "password_reset", method, target, check.record)
        return json_response(True, session_payload(token), "验证成功")

    @app.post("/api/account/password/reset")
    @login_required
    def password_reset():
        data = request_json()
        new_password = text_field(data, "new_password", strip=False)
        password_error = validate_password(new_password)
        if password_error:
            return api_error(password_error)

        session_row = load_session(text_field(data, "token"), current_user.id, "password_reset")
        if session_row is None:
            return api_error("验证已过期，请重新验证")

        record = session_code(session_row)
        if not is_completable(record):
            return api_error("验证码已失效，请重新获取")

        user = current_user._get_current_object()
        user_id = user.id
        complete_password_reset(user, session_row, record, new_password)

        logout_user()
        log_event("account", "password_reset", user_id=user_id, details={"method": session_row.method})
        return json_response(True, None, "密码重置成功，请重新登录")

    def _register_change_contact(kind: str):
        """Регистрирует четыре шага смены контакта вида `kind` (phone или email)."""
        channel = METHOD_CHANNELS[kind]
        purpose = f"change_{kind}"
        label = CONTACT_LABELS[kind]
        base = f"/api/account/change-{kind}"

        @login_required
        def send_old_code():
            data = request_json()
            target = _current_target(kind)
            if not target:
                return api_error(f"账号未绑定{label}")
            return send_code_response(channel, kind, target, purpose, f"send_{channel}", data, user_id=current_user.id)

        @login_required
        def verify_old_code():
            if is_rate_limited(f"{purpose}_verify", limit=15, window_seconds=15 * 60, identity=str(current_user.id)):
                return api_error("验证过于频繁，请稍后再试", 429)

            data = request_json()
            target = _current_target(kind)
            if not target:
                return api_error(f"账号未绑定{label}")
            check = verify_code(channel, target, purpose, data.get("code"))
            if not check.success:
                return api_error(check.message)

            token = open_session(current_user.id, purpose, kind, target, check.record)
            return json_response(True, session_payload(token), "验证成功")

        def _new_target(data: dict):
            """Проверяет новый контакт; возвращает (значение, ошибка)."""
            new_target = normalize_contact(kind, data.get(f"new_{kind}"))
            if not new_target:
                return None, api_error(f"请输入正确的新{label}")
            if new_target == _current_target(kind):
                return None, api_error(f"新{label}不能与原{label}相同")
            column = UserContact.phone if kind == "phone" else UserContact.email
            if UserContact.query.filter(column == new_target, UserContact.user_id != current_user.id).first():
                return None, api_error(f"该{label}已被其他账号使用")
            return new_target, None

        def _verified_session(data: dict):
            session_row = load_session(text_field(data, "token"), current_user.id, purpose)
            if session_row is None or session_row.target != _current_target(kind):
                return None
            return session_row

        @login_required
        def send_new_code():
            data = request_json()
            if _verified_session(data) is None:
                return api_error(f"请先验证原{label}")
            new_target, error = _new_target(data)
            if error:
                return error
            return send_code_response(channel, kind, new_target, purpose, f"send_{channel}", data, user_id=current_user.id)

        @login_required
        def change_contact():
            data = request_json()
            session_row = _verified_session(data)
            if session_row is None:
                return api_error(f"请先验证原{label}")
            old_record = session_code(session_row)
            if old_record is None or old_record.status != int(CodeStatus.FIRST_VERIFIED):
                return api_error(f"原{label}验证已失效，请重新验证")

            new_target, error = _new_target(data)
            if error:
                return error
            check = verify_code(channel, new_target, purpose, data.get("code"))
            if not check.success:
                return api_error(check.message)

            user = current_user._get_current_object()
            old_target = session_row.target
            try:
                if user.contact is None:
                    user.contact = UserContact(user_id=user.id)
                setattr(user.contact, kind, new_target)
                user.contact.updated_at = datetime.utcnow()
                mark_second_verified(old_record)
                consume_code(check.record)
                close_session(session_row)
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                return api_error(f"该{label}已被其他账号使用")

            log_event(
                "account",
                purpose,
                user_id=user.id,
                details={"old": mask_contact(kind, old_target), "new": mask_contact(kind, new_target)},
            )
            return json_response(True, {kind: mask_contact(kind, new_target)}, f"{label}修改成功")

        app.add_url_rule(f"{base}/send-old-code", f"{purpose}_send_old_code", send_old_code, methods=["POST"])
        app.add_url_rule(f"{base}/verify-old-code", f"{purpose}_verify_old_code", verify_old_code, methods=["POST"])
        app.add_url_rule(f"{base}/send-new-code", f"{purpose}_send_new_code", send_new_code, methods=["POST"])
        app.add_url_rule(base, purpose, change_contact, methods=["POST"])

    _register_change_contact("phone")
    _register_change_contact("email")
