"""
Общие фикстуры тестов: приложение на SQLite в памяти, API-клиент с CSRF и фабрики данных.
"""

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from config import Config
from extensions import db
from models.captcha import CaptchaConfig
from models.user import User
from models.user_contact import UserContact
from models.verification_code import CODE_MODELS


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    CORS_ENABLED = False
    CSRF_ENABLED = True
    CODE_DELIVERY_DEBUG = True
    SMTP_HOST = ""
    SMS_API_URL = ""
    DEFAULT_RATE_LIMIT = ""
    REQUIRE_CAPTCHA = False
    CAPTCHA_PROOF_SINGLE_USE = False
    LOG_LEVEL = "WARNING"


class ApiClient:
    """Тестовый клиент, добавляющий CSRF-токен к изменяющим запросам."""

    def __init__(self, client):
        self.client = client
        self._csrf_token = None

    def csrf_token(self) -> str:
        if self._csrf_token is None:
            response = self.client.get("/api/csrf-token")
            self._csrf_token = response.get_json()["data"]["csrf_token"]
        return self._csrf_token

    def _headers(self, headers):
        return {"X-CSRF-Token": self.csrf_token(), **(headers or {})}

    def get(self, url, **kwargs):
        return self.client.get(url, **kwargs)

    def post(self, url, json=None, headers=None):
        return self.client.post(url, json=json or {}, headers=self._headers(headers))

    def put(self, url, json=None, headers=None):
        return self.client.put(url, json=json or {}, headers=self._headers(headers))

    def delete(self, url, headers=None):
        return self.client.delete(url, headers=self._headers(headers))


@pytest.fixture
def app():
    return create_app(TestingConfig)


@pytest.fixture
def ctx(app):
    """Контекст приложения для тестов сервисного слоя (без HTTP-клиента)."""
    with app.app_context():
        yield app
        db.session.remove()


@pytest.fixture
def api(app):
    return ApiClient(app.test_client())


@pytest.fixture
def make_user(app):
    def factory(username="alice", password="Secret123", phone="13800138000", email=None, role="user", status=1):
        with app.app_context():
            user = User(
                username=username,
                password_hash=generate_password_hash(password, method="scrypt"),
                role=role,
                status=status,
            )
            user.contact = UserContact(phone=phone, email=email)
            db.session.add(user)
            db.session.commit()
            return user.id

    return factory


@pytest.fixture
def make_captcha_config(app):
    def factory(provider="geetest", scenes=("send_sms", "send_email", "register"), **fields):
        defaults = {
            "geetest": {"captcha_id": "gt-id", "captcha_key": "gt-key"},
            "turnstile": {"site_key": "ts-site", "secret_key": "ts-secret"},
            "recaptcha": {"site_key": "rc-site", "secret_key": "rc-secret"},
            "hcaptcha": {"site_key": "hc-site", "secret_key": "hc-secret"},
        }.get(provider, {})
        with app.app_context():
            config = CaptchaConfig(
                name=fields.pop("name", f"{provider} config"),
                provider=provider,
                scenes=list(scenes),
                **{**defaults, **fields},
            )
            db.session.add(config)
            db.session.commit()
            return config.id

    return factory


@pytest.fixture
def latest_code(app):
    """Последний код контакта: словарь полей, чтобы не держать ORM-объект вне контекста."""

    def lookup(channel, target, purpose):
        model = CODE_MODELS[channel]
        with app.app_context():
            record = (
                model.query.filter(getattr(model, model.target_column) == target, model.purpose == purpose)
                .order_by(model.id.desc())
                .first()
            )
            if record is None:
                return None
            return {
                "code_id": record.code_id,
                "code": record.code,
                "status": record.status,
                "verify_count": record.verify_count,
                "validity_period": record.validity_period,
                "expires_at": record.expires_at,
                "created_at": record.created_at,
            }

    return lookup


@pytest.fixture
def login(api):
    def do_login(account="alice", password="Secret123"):
        response = api.post("/api/login", {"account": account, "password": password})
        assert response.status_code == 200, response.get_json()
        return response.get_json()["data"]

    return do_login
