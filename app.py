"""
Название: «Tongxing»
Краткое описание: портал учётных записей – коды подтверждения по SMS и email с лимитами
отправки, проверка CAPTCHA у нескольких провайдеров и многошаговые сценарии личного кабинета.
Язык: Python (Flask)
"""

import hmac
import logging
import secrets

import click
from flask import Flask, g, request, session
from flask_babel import gettext as _
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from config import Config, parse_rate_limit
from extensions import db, login_manager, cors, babel
import models  # noqa: F401 - регистрирует модели для db.create_all()
from routes.auth import register_routes as register_auth_routes
from routes.verification import register_routes as register_verification_routes
from routes.account import register_routes as register_account_routes
from routes.recovery import register_routes as register_recovery_routes
from routes.admin import register_routes as register_admin_routes
from utils.api_response import api_error, json_response
from utils.cleanup import cleanup_expired_records
from utils.i18n import is_supported_language, resolve_request_language
from utils.rate_limit import InMemoryRateLimiter

CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


def create_app(config_object=Config) -> Flask:
    """Создаёт приложение портала: расширения, маршруты, middleware и CLI."""
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")), logging.INFO))

    # Некорректное правило по умолчанию должно остановить запуск, а не первую отправку
    parse_rate_limit(app.config.get("DEFAULT_RATE_LIMIT"))

    # Инициализация расширений
    db.init_app(app)
    login_manager.init_app(app)

    def select_locale() -> str:
        """Язык, определённый для запроса в before_request."""
        return getattr(g, "lang", app.config["DEFAULT_LANGUAGE"])

    def select_timezone() -> str:
        return app.config["TIMEZONE"]

    babel.init_app(app, locale_selector=select_locale, timezone_selector=select_timezone)

    if app.config["CORS_ENABLED"]:
        cors.init_app(
            app,
            resources={r"/api/*": {"origins": app.config["CORS_ORIGINS"]}},
            supports_credentials=True,
        )

    app.extensions["rate_limiter"] = InMemoryRateLimiter()

    # Регистрация роутов по модулям
    register_auth_routes(app)
    register_verification_routes(app)
    register_account_routes(app)
    register_recovery_routes(app)
    register_admin_routes(app)

    with app.app_context():
        # Только отсутствующие таблицы; изменения схемы выполняются миграциями вручную
        db.create_all()

    def _ensure_csrf_token() -> str:
        """CSRF-токен cookie-сессии; создаётся при первом обращении."""
        token = session.get("csrf_token")
        if not token:
            token = secrets.token_urlsafe(32)
            session["csrf_token"] = token
        return token

    def _is_csrf_valid() -> bool:
        expected = session.get("csrf_token")
        provided = request.headers.get("X-CSRF-Token")
        if not expected or not provided:
            return False
        return hmac.compare_digest(expected, provided)

    @login_manager.unauthorized_handler
    def handle_unauthorized():
        """JSON 401 вместо редиректа на страницу входа."""
        return api_error(_("请先登录"), 401)

    @app.before_request
    def detect_language():
        g.lang = resolve_request_language(
            request=request,
            supported_languages=app.config["SUPPORTED_LANGUAGES"],
            cookie_name=app.config["LANG_COOKIE_NAME"],
            default_language=app.config["DEFAULT_LANGUAGE"],
        )

    @app.before_request
    def enforce_csrf():
        """Изменяющие запросы с cookie-сессией обязаны передать X-CSRF-Token."""
        if not app.config.get("CSRF_ENABLED", True):
            return None
        if request.method in CSRF_SAFE_METHODS:
            return None
        if request.endpoint in {"healthz"}:
            return None

        # Bearer-запросы не опираются на cookie и CSRF не подвержены
        if request.headers.get("Authorization", "").lower().startswith("bearer "):
            return None

        if _is_csrf_valid():
            return None

        return api_error(_("CSRF 令牌无效，请刷新页面后重试"), 400)

    @app.get("/api/csrf-token")
    def csrf_token():
        return json_response(True, {"csrf_token": _ensure_csrf_token()}, "获取成功")

    @app.after_request
    def persist_lang_cookie(response):
        """Запоминает язык, явно выбранный параметром ?lang=."""
        query_lang = request.args.get("lang")
        if is_supported_language(query_lang, app.config["SUPPORTED_LANGUAGES"]):
            cookie_name = app.config["LANG_COOKIE_NAME"]
            if request.cookies.get(cookie_name) != query_lang:
                response.set_cookie(
                    cookie_name,
                    query_lang.strip().lower(),
                    max_age=365 * 24 * 60 * 60,
                    secure=app.config["SESSION_COOKIE_SECURE"],
                    httponly=False,
                    samesite="Lax",
                    path="/",
                )
        return response

    @app.after_request
    def apply_security_headers(response):
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Permissions-Policy", "camera=(), microphone=(), geolocation=()")
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(exc):
        db.session.rollback()
        app.logger.exception("Ошибка базы данных при обработке %s %s", request.method, request.path)
        return api_error(_("系统错误"), 500)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        messages = {
            400: _("请求参数错误"),
            401: _("请先登录"),
            403: _("无权限访问"),
            404: _("接口不存在"),
            405: _("不支持的请求方法"),
        }
        return api_error(messages.get(exc.code, exc.description or exc.name), exc.code or 500)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    @app.cli.command("cleanup")
    @click.option("--days", default=7, show_default=True, help="Срок хранения отозванных токенов в днях.")
    def cleanup_command(days):
        """Удаляет истёкшие сессии проверок, счётчики лимитов и старые токены."""
        removed = cleanup_expired_records(days=days)
        click.echo(", ".join(f"{name}: {count}" for name, count in removed.items()))

    return app
