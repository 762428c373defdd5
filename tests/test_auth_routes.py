"""
Регистрация, вход, токены и общие механизмы приложения (CSRF, заголовки, язык).
"""

from extensions import db
from models.auth_token import TOKEN_STATUS_LOGGED_OUT, AuthToken
from models.verification_code import CodeStatus, SmsCode

PHONE = "13800138000"


class TestRegister:
    def test_register_by_phone_code(self, api, latest_code):
        assert api.post("/api/sms/send-code", {"phone": PHONE, "purpose": "register"}).status_code == 200
        code = latest_code("sms", PHONE, "register")["code"]

        response = api.post(
            "/api/register",
            {"username": "alice", "password": "Secret123", "phone": PHONE, "code": code},
        )
        assert response.status_code == 200, response.get_json()
        assert response.get_json()["data"]["user"]["phone"] == PHONE
        assert latest_code("sms", PHONE, "register")["status"] == CodeStatus.CONSUMED

    def test_register_by_email_code(self, api, latest_code):
        assert api.post("/api/email/send-code", {"email": "Bob@Example.com", "purpose": "register"}).status_code == 200
        code = latest_code("email", "bob@example.com", "register")["code"]

        response = api.post(
            "/api/register",
            {"username": "bob", "password": "Secret123", "email": "bob@example.com", "code": code},
        )
        assert response.status_code == 200, response.get_json()

    def test_send_code_to_registered_phone(self, api, make_user):
        make_user()
        response = api.post("/api/sms/send-code", {"phone": PHONE, "purpose": "register"})
        assert response.get_json()["message"] == "该手机号已被注册"

    def test_login_code_for_unknown_phone(self, api):
        response = api.post("/api/sms/send-code", {"phone": PHONE, "purpose": "login"})
        assert response.get_json()["message"] == "该手机号未注册"

    def test_invalid_phone(self, api):
        response = api.post("/api/sms/send-code", {"phone": "12345", "purpose": "register"})
        assert response.get_json()["message"] == "请输入正确的手机号"

    def test_unknown_purpose(self, api):
        response = api.post("/api/sms/send-code", {"phone": PHONE, "purpose": "password_reset"})
        assert response.get_json()["message"] == "不支持的验证码用途"

    def test_register_rejects_wrong_code(self, api, latest_code):
        api.post("/api/sms/send-code", {"phone": PHONE, "purpose": "register"})
        real = latest_code("sms", PHONE, "register")["code"]
        wrong = "000000" if real != "000000" else "111111"

        response = api.post(
            "/api/register",
            {"username": "alice", "password": "Secret123", "phone": PHONE, "code": wrong},
        )
        assert response.status_code == 400
        assert response.get_json()["message"] == "验证码错误"

    def test_register_validates_password(self, api):
        response = api.post("/api/register", {"username": "alice", "password": "has space1", "phone": PHONE})
        assert response.get_json()["message"] == "密码不能包含空格"

    def test_verify_code_endpoint(self, api, latest_code):
        api.post("/api/sms/send-code", {"phone": PHONE, "purpose": "register"})
        code = latest_code("sms", PHONE, "register")["code"]

        response = api.post("/api/sms/verify-code", {"phone": PHONE, "purpose": "register", "code": code})
        assert response.status_code == 200
        assert response.get_json()["data"] == {"verified": True}
        assert latest_code("sms", PHONE, "register")["status"] == CodeStatus.FIRST_VERIFIED


class TestLogin:
    def test_login_by_password_and_me(self, api, make_user, login):
        make_user()
        data = login()
        assert data["token_type"] == "Bearer"
        assert data["access_token"] and data["refresh_token"]

        me = api.get("/api/me").get_json()
        assert me["data"]["username"] == "alice"

    def test_login_by_phone_account(self, make_user, login):
        make_user()
        assert login(account=PHONE)["user"]["username"] == "alice"

    def test_wrong_password(self, api, make_user):
        make_user()
        response = api.post("/api/login", {"account": "alice", "password": "wrong-pass"})
        assert response.status_code == 401
        assert response.get_json()["message"] == "账号或密码错误"

    def test_banned_user(self, api, make_user):
        make_user(status=2)
        response = api.post("/api/login", {"account": "alice", "password": "Secret123"})
        assert response.status_code == 403

    def test_login_by_code(self, api, make_user, latest_code):
        make_user()
        assert api.post("/api/sms/send-code", {"phone": PHONE, "purpose": "login"}).status_code == 200
        code = latest_code("sms", PHONE, "login")["code"]

        response = api.post("/api/login/code", {"phone": PHONE, "code": code})
        assert response.status_code == 200, response.get_json()
        assert latest_code("sms", PHONE, "login")["status"] == CodeStatus.CONSUMED
        assert api.post("/api/login/code", {"phone": PHONE, "code": code}).get_json()["message"] == "验证码已使用"

    def test_bearer_access_and_refresh(self, app, api, make_user, login):
        make_user()
        tokens = login()

        bearer_client = app.test_client()
        me = bearer_client.get("/api/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
        assert me.status_code == 200

        # Bearer-запросы не требуют CSRF
        refreshed = bearer_client.post(
            "/api/token/refresh",
            json={"refresh_token": tokens["refresh_token"]},
            headers={"Authorization": f"Bearer {tokens['access_token']}"},
        )
        assert refreshed.status_code == 200, refreshed.get_json()
        assert refreshed.get_json()["data"]["refresh_token"] != tokens["refresh_token"]

        reused = api.post("/api/token/refresh", {"refresh_token": tokens["refresh_token"]})
        assert reused.status_code == 401

    def test_logout_revokes_login_token(self, app, api, make_user, login):
        make_user()
        login()
        assert api.post("/api/logout").status_code == 200
        assert api.get("/api/me").status_code == 401
        with app.app_context():
            login_token = AuthToken.query.filter_by(kind="login").one()
            assert login_token.status == TOKEN_STATUS_LOGGED_OUT


class TestApplication:
    def test_csrf_required_for_cookie_requests(self, app):
        client = app.test_client()
        response = client.post("/api/login", json={"account": "alice", "password": "Secret123"})
        assert response.status_code == 400
        assert response.get_json()["success"] is False

    def test_envelope_and_security_headers(self, api):
        response = api.get("/api/captcha/config")
        body = response.get_json()
        assert set(body) == {"success", "data", "message", "timestamp"}
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"

    def test_unknown_route_is_json(self, api):
        response = api.get("/api/nope")
        assert response.status_code == 404
        assert response.get_json()["message"] == "接口不存在"

    def test_language_cookie(self, api):
        response = api.get("/healthz?lang=en")
        assert response.status_code == 200
        assert any(cookie.startswith("site_lang=en") for cookie in response.headers.getlist("Set-Cookie"))


class TestNonStringFields:
    """Числа и прочие нестроковые значения в JSON не приводят к ошибке 500."""

    def test_numeric_phone_is_accepted(self, api, latest_code):
        response = api.post("/api/sms/send-code", {"phone": 13800138000, "purpose": "register"})
        assert response.status_code == 200, response.get_json()
        assert latest_code("sms", PHONE, "register")["status"] == CodeStatus.ISSUED

    def test_numeric_code_is_verified(self, app, api):
        api.post("/api/sms/send-code", {"phone": PHONE, "purpose": "register"})
        with app.app_context():
            record = SmsCode.query.filter_by(phone=PHONE, purpose="register").one()
            record.code = "654321"
            db.session.commit()

        response = api.post("/api/sms/verify-code", {"phone": PHONE, "purpose": "register", "code": 654321})
        assert response.status_code == 200, response.get_json()
        assert response.get_json()["data"] == {"verified": True}

    def test_structured_values_are_validation_errors(self, api):
        response = api.post("/api/sms/send-code", {"phone": {"number": PHONE}, "purpose": "register"})
        assert response.status_code == 400
        assert response.get_json()["message"] == "请输入正确的手机号"

        response = api.post("/api/sms/verify-code", {"phone": PHONE, "purpose": ["register"], "code": "123456"})
        assert response.status_code == 400
        assert response.get_json()["message"] == "缺少验证码用途"

        response = api.post("/api/register", {"username": "alice", "password": ["Secret123"], "phone": PHONE})
        assert response.status_code == 400
        assert response.get_json()["message"] == "密码长度必须为8-20位"

    def test_numeric_login_account(self, api, make_user):
        make_user()
        response = api.post("/api/login", {"account": 13800138000, "password": "Secret123"})
        assert response.status_code == 200, response.get_json()

    def test_numeric_refresh_token(self, api):
        response = api.post("/api/token/refresh", {"refresh_token": 42})
        assert response.status_code == 401
