"""
API администратора: правила лимитов, списки, конфигурации и журнал CAPTCHA.
"""

from extensions import db
from models.captcha import CaptchaVerifyLog
from models.send_limit import SendLimit

PHONE = "13800138000"


def as_admin(make_user, login):
    make_user(username="root", role="admin", phone="13700137000")
    login(account="root")


class TestAccess:
    def test_anonymous_is_rejected(self, api):
        assert api.get("/admin/api/send-limits").status_code == 401

    def test_regular_user_is_forbidden(self, api, make_user, login):
        make_user()
        login()
        response = api.get("/admin/api/send-limits")
        assert response.status_code == 403
        assert response.get_json()["message"] == "无权限访问"


class TestSendLimits:
    def test_create_list_update_delete(self, app, api, make_user, login):
        as_admin(make_user, login)

        payload = {"limit_name": "每分钟1次", "limit_type": "phone", "time_window": 60, "max_count": 1}
        response = api.post("/admin/api/send-limits", payload)
        assert response.status_code == 200, response.get_json()
        created = response.get_json()["data"]
        assert created["template_id"] == "*"
        assert created["purpose"] == "*"
        assert created["priority"] == 100

        listed = api.get("/admin/api/send-limits").get_json()["data"]
        assert [item["id"] for item in listed] == [created["id"]]

        response = api.put(f"/admin/api/send-limits/{created['id']}", {**payload, "max_count": 3, "purpose": "login"})
        assert response.get_json()["data"]["max_count"] == 3
        assert response.get_json()["data"]["purpose"] == "login"

        assert api.delete(f"/admin/api/send-limits/{created['id']}").status_code == 200
        with app.app_context():
            assert SendLimit.query.count() == 0
        assert api.get(f"/admin/api/send-limits/{created['id']}").status_code == 404

    def test_validation(self, api, make_user, login):
        as_admin(make_user, login)
        base = {"limit_name": "x", "limit_type": "phone", "time_window": 60, "max_count": 1}

        cases = [
            ({**base, "limit_name": ""}, "限制名称不能为空"),
            ({**base, "limit_type": "user"}, "无效的限制类型"),
            ({**base, "time_window": 0}, "时间窗口必须大于0"),
            ({**base, "max_count": -1}, "最大次数必须大于0"),
        ]
        for payload, message in cases:
            response = api.post("/admin/api/send-limits", payload)
            assert response.status_code == 400
            assert response.get_json()["message"] == message

    def test_remaining_and_clear(self, api, make_user, login):
        as_admin(make_user, login)
        api.post(
            "/admin/api/send-limits",
            {"limit_name": "注册限制", "limit_type": "phone", "time_window": 600, "max_count": 2},
        )
        assert api.post("/api/sms/send-code", {"phone": PHONE, "purpose": "register"}).status_code == 200

        remaining = api.get(f"/admin/api/send-limits/remaining?target={PHONE}&purpose=register").get_json()["data"]
        assert remaining[0]["current_count"] == 1
        assert remaining[0]["remaining_count"] == 1

        response = api.post("/admin/api/send-limits/clear", {"target": PHONE})
        assert response.get_json()["data"] == {"cleared": 1}
        remaining = api.get(f"/admin/api/send-limits/remaining?target={PHONE}&purpose=register").get_json()["data"]
        assert remaining[0]["current_count"] == 0

    def test_blacklist_blocks_sending(self, api, make_user, login):
        as_admin(make_user, login)
        response = api.post("/admin/api/send-limits/blacklist", {"target": "+86 138 0013 8000", "reason": "abuse"})
        assert response.status_code == 200
        entry = response.get_json()["data"]
        assert entry["target"] == PHONE

        blocked = api.post("/api/sms/send-code", {"phone": PHONE, "purpose": "register"})
        assert blocked.status_code == 429
        assert blocked.get_json()["data"]["type"] == "blacklist"

        assert api.delete(f"/admin/api/send-limits/blacklist/{entry['id']}").status_code == 200
        assert api.post("/api/sms/send-code", {"phone": PHONE, "purpose": "register"}).status_code == 200

    def test_whitelist_entries(self, api, make_user, login):
        as_admin(make_user, login)
        assert api.post("/admin/api/send-limits/whitelist", {"target": "bad"}).status_code == 400
        api.post("/admin/api/send-limits/whitelist", {"target": "QA@Example.com", "expires_at": "2099-01-01T00:00:00"})

        entries = api.get("/admin/api/send-limits/whitelist").get_json()["data"]
        assert entries[0]["target"] == "qa@example.com"
        assert entries[0]["expires_at"] == "2099-01-01T00:00:00"


class TestCaptchaConfigs:
    def test_secrets_only_in_detail(self, api, make_user, login):
        as_admin(make_user, login)
        response = api.post(
            "/admin/api/captcha-configs",
            {
                "name": "极验",
                "provider": "geetest",
                "captcha_id": "gt-id",
                "captcha_key": "gt-key",
                "scenes": ["send_sms", "register", "send_sms"],
            },
        )
        assert response.status_code == 200, response.get_json()
        created = response.get_json()["data"]
        assert created["scenes"] == ["register", "send_sms"]
        assert "captcha_key" not in created

        detail = api.get(f"/admin/api/captcha-configs/{created['id']}").get_json()["data"]
        assert detail["captcha_key"] == "gt-key"

        public = api.get("/api/captcha/config?scene=register").get_json()["data"]
        assert public["captcha_id"] == "gt-id"

    def test_rejects_unknown_provider(self, api, make_user, login):
        as_admin(make_user, login)
        response = api.post("/admin/api/captcha-configs", {"name": "x", "provider": "acme", "scenes": []})
        assert response.get_json()["message"] == "不支持的验证服务商"

    def test_delete_keeps_logs(self, app, api, make_user, login, make_captcha_config):
        as_admin(make_user, login)
        config_id = make_captcha_config()
        with app.app_context():
            db.session.add(CaptchaVerifyLog(config_id=config_id, scene="send_sms", provider="geetest"))
            db.session.commit()

        assert api.delete(f"/admin/api/captcha-configs/{config_id}").status_code == 200
        with app.app_context():
            assert CaptchaVerifyLog.query.one().config_id is None


class TestCaptchaLogs:
    def test_pagination_and_filters(self, app, api, make_user, login):
        as_admin(make_user, login)
        with app.app_context():
            for index in range(25):
                db.session.add(
                    CaptchaVerifyLog(scene="send_sms", provider="geetest", verify_success=index % 5 != 0)
                )
            db.session.commit()

        data = api.get("/admin/api/captcha-logs?page_size=5").get_json()["data"]
        assert data["page_size"] == 10
        assert data["total"] == 25
        assert data["total_pages"] == 3
        assert len(data["items"]) == 10
        assert "created_at_local" in data["items"][0]

        failed = api.get("/admin/api/captcha-logs?verify_success=false").get_json()["data"]
        assert failed["total"] == 5
        assert len(api.get("/admin/api/captcha-logs?page=2").get_json()["data"]["items"]) == 5

        log_id = data["items"][0]["id"]
        detail = api.get(f"/admin/api/captcha-logs/{log_id}").get_json()["data"]
        assert detail["id"] == log_id
        assert api.get("/admin/api/captcha-logs/9999").status_code == 404


class TestFieldTypes:
    def test_non_string_fields_are_validation_errors(self, api, make_user, login):
        as_admin(make_user, login)
        payload = {"limit_name": 123, "limit_type": ["phone"], "time_window": 60, "max_count": 1}
        response = api.post("/admin/api/send-limits", payload)
        assert response.status_code == 400
        assert response.get_json()["message"] == "无效的限制类型"

        response = api.post("/admin/api/captcha-configs", {"name": {"a": 1}, "provider": "geetest", "scenes": []})
        assert response.status_code == 400
        assert response.get_json()["message"] == "配置名称不能为空"
