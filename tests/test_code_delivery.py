from utils.code_delivery import send_verification_code


class FakeResponse:
    status = 200

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class TestSendVerificationCode:
    def test_debug_transport_when_unconfigured(self, ctx):
        result = send_verification_code("email", "a@example.com", "123456", "register", 600)
        assert result.sent is True
        assert result.transport == "debug"

    def test_unconfigured_without_debug_fails(self, ctx):
        ctx.config["CODE_DELIVERY_DEBUG"] = False
        result = send_verification_code("sms", "13800138000", "123456", "login", 600)
        assert result.sent is False

    def test_unknown_channel(self, ctx):
        assert send_verification_code("fax", "x", "123456", "login", 600).sent is False

    def test_sms_gateway_request(self, ctx, monkeypatch):
        """Шлюз получает JSON с шаблоном назначения и Bearer-токеном."""
        ctx.config.update(SMS_API_URL="https://sms.example.test/send", SMS_API_TOKEN="secret")
        seen = {}

        def fake_urlopen(request, timeout):
            seen["request"] = request
            seen["timeout"] = timeout
            return FakeResponse()

        monkeypatch.setattr("utils.code_delivery.urllib.request.urlopen", fake_urlopen)
        result = send_verification_code("sms", "13800138000", "123456", "password_reset", 600)

        assert result.sent is True
        assert result.transport == "sms_api"
        assert seen["request"].get_header("Authorization") == "Bearer secret"
        assert b'"to": "13800138000"' in seen["request"].data
        assert b"123456" in seen["request"].data

    def test_malformed_gateway_url_is_a_delivery_failure(self, ctx):
        ctx.config["SMS_API_URL"] = "not a url"
        result = send_verification_code("sms", "13800138000", "123456", "login", 600)
        assert result.sent is False
        assert result.transport == "sms_api"
