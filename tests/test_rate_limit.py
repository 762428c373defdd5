"""
Тесты лимитов отправки кодов: правила, окна, списки и атомарное резервирование.
"""

from datetime import datetime, timedelta

import pytest

from config import parse_rate_limit
from extensions import db
from models.send_limit import SendCounter, SendLimit
from utils.rate_limit import InMemoryRateLimiter, RateLimitService, build_bucket_key

PHONE = "13800138000"
IP = "10.0.0.1"
TEMPLATE = "SMS_PASSWORD_RESET"


def add_limit(**fields):
    values = {
        "limit_name": "每小时5次",
        "template_id": "*",
        "purpose": "*",
        "limit_type": "phone",
        "time_window": 3600,
        "max_count": 5,
        "priority": 100,
    }
    values.update(fields)
    limit = SendLimit(**values)
    db.session.add(limit)
    db.session.commit()
    return limit


class TestRuleEvaluation:
    """Проверка правил без изменения счётчиков."""

    def test_no_rules_allows(self, ctx):
        """Без правил и лимита по умолчанию отправка разрешена."""
        result = RateLimitService().check_rate_limit(PHONE, IP, TEMPLATE, "password_reset")
        assert result.allowed is True
        assert result.reason == "无限制配置"

    def test_nth_plus_one_send_is_denied(self, ctx):
        """Отправки с 1 по N проходят, (N+1)-я в том же окне отклоняется."""
        add_limit(max_count=3, time_window=60)
        service = RateLimitService()

        for _ in range(3):
            assert service.reserve_send(PHONE, IP, TEMPLATE, "password_reset").allowed is True

        denied = service.reserve_send(PHONE, IP, TEMPLATE, "password_reset")
        assert denied.allowed is False
        assert denied.limit_type == "phone"
        assert denied.limit == 3
        assert denied.current == 3
        assert 0 < denied.retry_after <= 60

    def test_check_is_read_only(self, ctx):
        """Повторная проверка без отправки не меняет результат."""
        add_limit(max_count=1, time_window=60)
        service = RateLimitService()

        first = service.check_rate_limit(PHONE, IP, TEMPLATE, "login")
        second = service.check_rate_limit(PHONE, IP, TEMPLATE, "login")

        assert first.allowed is True and second.allowed is True
        assert SendCounter.query.count() == 0

    def test_record_send_feeds_check(self, ctx):
        """После record_send до потолка check_rate_limit отказывает."""
        add_limit(max_count=2, time_window=120)
        service = RateLimitService()

        service.record_send(PHONE, IP, TEMPLATE, "login")
        assert service.check_rate_limit(PHONE, IP, TEMPLATE, "login").allowed is True
        service.record_send(PHONE, IP, TEMPLATE, "login")

        result = service.check_rate_limit(PHONE, IP, TEMPLATE, "login")
        assert result.allowed is False
        assert result.current == 2

    def test_rules_are_scoped_by_purpose(self, ctx):
        """Правило для одного назначения не ограничивает другое."""
        add_limit(purpose="login", max_count=1, time_window=60)
        service = RateLimitService()

        assert service.reserve_send(PHONE, IP, TEMPLATE, "login").allowed is True
        assert service.reserve_send(PHONE, IP, TEMPLATE, "login").allowed is False
        assert service.reserve_send(PHONE, IP, TEMPLATE, "register").allowed is True

    def test_template_rule_and_wildcard(self, ctx):
        """Правило шаблона применяется только к своему шаблону."""
        add_limit(template_id="SMS_LOGIN", limit_type="phone_template", max_count=1, time_window=60)
        service = RateLimitService()

        assert service.reserve_send(PHONE, IP, "SMS_LOGIN", "login").allowed is True
        assert service.reserve_send(PHONE, IP, "SMS_LOGIN", "login").allowed is False
        assert service.reserve_send(PHONE, IP, "SMS_REGISTER", "login").allowed is True

    def test_priority_decides_reported_rule(self, ctx):
        """При нескольких исчерпанных правилах сообщается правило с меньшим приоритетом."""
        add_limit(limit_name="IP 限制", limit_type="ip", max_count=1, time_window=60, priority=1)
        add_limit(limit_name="号码限制", limit_type="phone", max_count=1, time_window=60, priority=2)
        service = RateLimitService()

        service.reserve_send(PHONE, IP, TEMPLATE, "login")
        result = service.check_rate_limit(PHONE, IP, TEMPLATE, "login")
        assert result.allowed is False
        assert result.reason == "IP 限制"
        assert result.limit_type == "ip"

    def test_disabled_rule_is_ignored(self, ctx):
        add_limit(max_count=1, time_window=60, is_enabled=False)
        service = RateLimitService()
        service.reserve_send(PHONE, IP, TEMPLATE, "login")
        assert service.reserve_send(PHONE, IP, TEMPLATE, "login").allowed is True


class TestWindows:
    """Фиксированное окно и атомарность резервирования."""

    def test_window_restarts_after_expiry(self, ctx):
        add_limit(max_count=1, time_window=60)
        service = RateLimitService()
        start = datetime.utcnow()

        assert service.reserve_send(PHONE, IP, TEMPLATE, "login", now=start).allowed is True
        assert service.reserve_send(PHONE, IP, TEMPLATE, "login", now=start + timedelta(seconds=30)).allowed is False

        later = start + timedelta(seconds=61)
        assert service.reserve_send(PHONE, IP, TEMPLATE, "login", now=later).allowed is True
        counter = SendCounter.query.one()
        assert counter.count == 1
        assert counter.window_started_at == later

    def test_retry_after_counts_down(self, ctx):
        add_limit(max_count=1, time_window=100)
        service = RateLimitService()
        start = datetime.utcnow()
        service.reserve_send(PHONE, IP, TEMPLATE, "login", now=start)

        result = service.check_rate_limit(PHONE, IP, TEMPLATE, "login", now=start + timedelta(seconds=40))
        assert result.retry_after == 60

    def test_denied_reservation_counts_nothing(self, ctx):
        """Отказ одного правила откатывает увеличение остальных."""
        add_limit(limit_name="IP", limit_type="ip", max_count=10, time_window=60, priority=1)
        add_limit(limit_name="号码", limit_type="phone", max_count=1, time_window=60, priority=2)
        service = RateLimitService()

        assert service.reserve_send(PHONE, IP, TEMPLATE, "login").allowed is True
        assert service.reserve_send(PHONE, IP, TEMPLATE, "login").allowed is False

        remaining = {item["limit_name"]: item for item in service.get_remaining_count(PHONE, IP, TEMPLATE, "login")}
        assert remaining["IP"]["current_count"] == 1
        assert remaining["IP"]["remaining_count"] == 9
        assert remaining["号码"]["remaining_count"] == 0

    def test_release_returns_slot(self, ctx):
        add_limit(max_count=1, time_window=60)
        service = RateLimitService()

        service.reserve_send(PHONE, IP, TEMPLATE, "login")
        service.release_send(PHONE, IP, TEMPLATE, "login")
        assert service.reserve_send(PHONE, IP, TEMPLATE, "login").allowed is True

    def test_global_rule_shares_bucket(self, ctx):
        add_limit(limit_type="global", max_count=2, time_window=60)
        service = RateLimitService()

        assert service.reserve_send("13800138001", "1.1.1.1", TEMPLATE, "login").allowed is True
        assert service.reserve_send("13800138002", "2.2.2.2", TEMPLATE, "login").allowed is True
        assert service.reserve_send("13800138003", "3.3.3.3", TEMPLATE, "login").allowed is False

    def test_default_rule_applies_without_rules(self, ctx):
        ctx.config["DEFAULT_RATE_LIMIT"] = "1/60"
        service = RateLimitService()

        assert service.reserve_send(PHONE, IP, TEMPLATE, "login").allowed is True
        denied = service.reserve_send(PHONE, IP, TEMPLATE, "login")
        assert denied.allowed is False
        assert denied.reason == "默认发送频率限制"

    def test_clear_limit_removes_target_counters(self, ctx):
        add_limit(max_count=1, time_window=60)
        add_limit(limit_type="phone_template", max_count=1, time_window=60)
        service = RateLimitService()
        service.reserve_send(PHONE, IP, TEMPLATE, "login")
        service.reserve_send("13900139000", IP, TEMPLATE, "login")

        assert service.clear_limit(PHONE) == 2
        assert service.reserve_send(PHONE, IP, TEMPLATE, "login").allowed is True
        assert service.check_rate_limit("13900139000", IP, TEMPLATE, "login").allowed is False


class TestLists:
    """Белый и чёрный списки."""

    def test_blacklist_denies(self, ctx):
        service = RateLimitService()
        service.add_to_blacklist(PHONE, "spam")

        result = service.reserve_send(PHONE, IP, TEMPLATE, "login")
        assert result.allowed is False
        assert result.limit_type == "blacklist"

    def test_expired_blacklist_entry_is_ignored(self, ctx):
        service = RateLimitService()
        service.add_to_blacklist(PHONE, "spam", expires_at=datetime.utcnow() - timedelta(minutes=1))
        assert service.check_rate_limit(PHONE, IP, TEMPLATE, "login").allowed is True

    def test_whitelist_bypasses_rules(self, ctx):
        add_limit(max_count=1, time_window=60)
        service = RateLimitService()
        service.add_to_whitelist(PHONE, "tester")

        for _ in range(3):
            result = service.reserve_send(PHONE, IP, TEMPLATE, "login")
            assert result.allowed is True
            assert result.limit_type == "whitelist"
        assert SendCounter.query.count() == 0

    def test_remove_from_lists(self, ctx):
        service = RateLimitService()
        service.add_to_blacklist(PHONE)
        assert service.remove_from_blacklist(PHONE) is True
        assert service.remove_from_blacklist(PHONE) is False
        assert service.is_in_blacklist(PHONE) is False


class TestHelpers:
    def test_bucket_keys(self):
        assert build_bucket_key("phone", PHONE, IP, TEMPLATE) == f"phone:{PHONE}"
        assert build_bucket_key("ip_template", PHONE, IP, TEMPLATE) == f"ip_template:{IP}:{TEMPLATE}"
        assert build_bucket_key("global", PHONE, IP, TEMPLATE) == "global"

    def test_parse_rate_limit(self):
        assert parse_rate_limit("") is None
        assert parse_rate_limit("5/3600") == (5, 3600)
        with pytest.raises(ValueError):
            parse_rate_limit("5")
        with pytest.raises(ValueError):
            parse_rate_limit("0/60")

    def test_in_memory_limiter(self):
        limiter = InMemoryRateLimiter()
        assert limiter.is_allowed("k", 2, 60) is True
        assert limiter.is_allowed("k", 2, 60) is True
        assert limiter.is_allowed("k", 2, 60) is False
        assert limiter.is_allowed("other", 2, 60) is True
