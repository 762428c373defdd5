"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: routes/auth.py – маршруты аутентификации и управления сессиями.

Назначение модуля:
- Регистрация по подтверждённому коду с повторным предъявлением CAPTCHA.
- Вход по паролю или по коду, выход, обновление Bearer-токенов.
- Загрузка пользователя Flask-Login по серверному токену входа или Bearer-токену доступа.
"""

from flask import current_app, request
from flask_login import current_user, login_required, login_user, logout_user
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db, login_manager
from models.user import User
from models.user_contact import UserContact
from utils.api_response import api_error, json_response, request_json, text_field
from utils.auth_tokens import find_usable_token, issue_bearer_pair, issue_token, revoke_token
from utils.captcha import CaptchaService
from utils.contact_normalizer import normalize_email, normalize_phone
from utils.rate_limit import get_client_identifier, is_rate_limited
from utils.system_logger import log_event
from utils.verification_codes import consume_code, verify_code


@login_manager.user_loader
def load_user(session_token):
    token = find_usable_token(session_token, "login")
    if token is None or not token.user.is_active:
        return None
    user = token.user
    user.session_token = token.token
    return user


@login_manager.request_loader
def load_user_from_request(req):
    header = req.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    token = find_usable_token(value.strip(), "access")
    if token is None or not token.user.is_active:
        return None
    return token.user


def validate_password(password: str) -> str | None:
    if not (8 <= len(password) <= 20):
        return "密码长度必须为8-20位"
    if any(ch.isspace() for ch in password):
        return "密码不能包含空格"
    return None


def _validate_username(username: str) -> str | None:
    if not username:
        return "用户名不能为空"
    if len(username) < 3:
        return "用户名至少3个字符"
    if len(username) > 80:
        return "用户名不能超过80个字符"
    if any(ch.isspace() for ch in username):
        return "用户名不能包含空格"
    return None


def _find_user_by_account(account: str) -> User | None:
    phone = normalize_phone(account)
    if phone:
        contact = UserContact.query.filter_by(phone=phone).first()
        return contact.user if contact else None
    email = normalize_email(account)
    if email:
        contact = UserContact.query.filter_by(email=email).first()
        return contact.user if contact else None
    return User.query.filter_by(username=account).first()


def _start_session(user: User, method: str):
    """Выдаёт токен входа, открывает сессию Flask-Login и пару Bearer-токенов."""
    client_ip = get_client_identifier()
    login_token = issue_token(user.id, "login", client_ip)
    bearer = issue_bearer_pair(user.id, client_ip)
    db.session.commit()

    user.session_token = login_token.token
    login_user(user)
    log_event("auth", f"login_{method}", user_id=user.id)
    return json_response(True, {"user": user.to_dict(), **bearer}, "登录成功")


def register_routes(app):
    @app.post("/api/register")
    def register():
        if is_rate_limited("register", limit=10, window_seconds=15 * 60):
            return api_error("注册尝试过于频繁，请稍后再试", 429)

        data = request_json()
        username = text_field(data, "username")
        password = text_field(data, "password", strip=False)
        raw_phone = text_field(data, "phone")
        raw_email = text_field(data, "email")

        username_error = _validate_username(username)
        if username_error:
            return api_error(username_error)
        password_error = validate_password(password)
        if password_error:
            return api_error(password_error)

        if raw_phone:
            method, channel, target = "phone", "sms", normalize_phone(raw_phone)
            if not target:
                return api_error("请输入正确的手机号")
        elif raw_email:
            method, channel, target = "email", "email", normalize_email(raw_email)
            if not target:
                return api_error("请输入正确的邮箱地址")
        else:
            return api_error("请填写手机号或邮箱")

        if User.query.filter_by(username=username).first():
            return api_error("用户名已存在")
        column = UserContact.phone if method == "phone" else UserContact.email
        if UserContact.query.filter(column == target).first():
            return api_error("该手机号已被注册" if method == "phone" else "该邮箱已被注册")

        # Проверка CAPTCHA на шаге отправки кода предъявляется повторно
        captcha_service = CaptchaService()
        captcha_config = captcha_service.get_captcha_config("register")
        if captcha_config is not None:
            captcha_token = text_field(data, "captcha_token")
            if not captcha_token:
                return api_error("请先完成人机验证")
            second = captcha_service.verify_second_time(
                captcha_token, target, captcha_config.provider, "register", get_client_identifier()
            )
            if not second.success:
                return api_error(second.message)

        check = verify_code(channel, target, "register", data.get("code"))
        if not check.success:
            return api_error(check.message)

        user = User(username=username, password_hash=generate_password_hash(password, method="scrypt"))
        user.contact = UserContact(**{method: target})
        consume_code(check.record)
        db.session.add(user)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return api_error("用户名或联系方式已被使用")

        log_event("auth", "register", user_id=user.id, details={"method": method})
        return json_response(True, {"user": user.to_dict()}, "注册成功")

    @app.post("/api/login")
    def login():
        data = request_json()
        account = text_field(data, "account") or text_field(data, "username")
        password = text_field(data, "password", strip=False)

        if is_rate_limited("login_ip", limit=20, window_seconds=10 * 60):
            return api_error("登录尝试过于频繁，请稍后再试", 429)
        if is_rate_limited("login_user", limit=10, window_seconds=10 * 60, identity=account.lower() or "anonymous"):
            return api_error("该账号登录尝试过于频繁，请稍后再试", 429)

        if not account or not password:
            return api_error("请输入账号和密码")

        user = _find_user_by_account(account)
        if user is None or not check_password_hash(user.password_hash, password):
            return api_error("账号或密码错误", 401)
        if not user.is_active:
            return api_error("账号已被禁用", 403)
        return _start_session(user, "password")

    @app.post("/api/login/code")
    def login_by_code():
        if is_rate_limited("login_code_ip", limit=20, window_seconds=10 * 60):
            return api_error("登录尝试过于频繁，请稍后再试", 429)

        data = request_json()
        raw_phone = text_field(data, "phone")
        if raw_phone:
            method, channel, target = "phone", "sms", normalize_phone(raw_phone)
        else:
            method, channel, target = "email", "email", normalize_email(data.get("email"))
        if not target:
            return api_error("请输入正确的手机号或邮箱")

        check = verify_code(channel, target, "login", data.get("code"))
        if not check.success:
            return api_error(check.message)

        column = UserContact.phone if method == "phone" else UserContact.email
        contact = UserContact.query.filter(column == target).first()
        if contact is None:
            return api_error("账号不存在", 404)
        if not contact.user.is_active:
            return api_error("账号已被禁用", 403)

        consume_code(check.record)
        return _start_session(contact.user, "code")

    @app.post("/api/token/refresh")
    def refresh_token():
        data = request_json()
        token = find_usable_token(text_field(data, "refresh_token"), "refresh")
        if token is None or not token.user.is_active:
            return api_error("刷新令牌无效或已过期", 401)

        revoke_token(token)
        bearer = issue_bearer_pair(token.user_id, get_client_identifier())
        db.session.commit()
        return json_response(True, bearer, "令牌已刷新")

    @app.post("/api/logout")
    @login_required
    def logout():
        session_token = getattr(current_user, "session_token", None)
        login_token = find_usable_token(session_token, "login")
        if login_token is not None:
            revoke_token(login_token)

        header = request.headers.get("Authorization", "")
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer":
            access_token = find_usable_token(value.strip(), "access")
            if access_token is not None:
                revoke_token(access_token)

        db.session.commit()
        current_app.logger.info("Пользователь %s вышел из системы", current_user.uuid)
        logout_user()
        return json_response(True, None, "已退出登录")

    @app.get("/api/me")
    @login_required
    def me():
        return json_response(True, current_user.to_dict(), "获取成功")
