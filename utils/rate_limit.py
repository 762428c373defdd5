"""
Модуль: `utils/rate_limit.py`.
Назначение: Ограничение частоты запросов.

- InMemoryRateLimiter: скользящее окно в памяти процесса для попыток входа и проверки кодов.
- RateLimitService: правила администратора для отправки кодов (таблицы send_limit,
  send_counter, send_whitelist, send_blacklist). Окно фиксированное и открывается
  первой учтённой отправкой. Резервирование квоты выполняется условным UPDATE в одной
  транзакции, поэтому параллельные запросы не могут вдвоём пройти последний слот.
"""

import math
import time
from collections import defaultdict, deque
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from threading import Lock

from flask import current_app, request
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from config import parse_rate_limit
from extensions import db
from models.send_limit import SendBlacklist, SendCounter, SendLimit, SendWhitelist, WILDCARD

DEFAULT_RULE_ID = 0
_RESERVE_ATTEMPTS = 3


class InMemoryRateLimiter:
    """Простой in-memory rate limiter (sliding window)."""

    def __init__(self):
        self._events = defaultdict(deque)
        self._lock = Lock()

    def is_allowed(self, key: str, limit: int, window_seconds: int) -> bool:
        if limit <= 0 or window_seconds <= 0:
            return False

        now = time.monotonic()
        cutoff = now - window_seconds

        with self._lock:
            events = self._events[key]
            while events and events[0] <= cutoff:
                events.popleft()

            if len(events) >= limit:
                return False

            events.append(now)
            return True


def get_client_identifier() -> str:
    """Возвращает IP клиента с учетом X-Forwarded-For и X-Real-IP."""
    forwarded_for = request.headers.get("X-Forwarded-For", "")
    if forwarded_for:
        first_ip = forwarded_for.split(",", 1)[0].strip()
        if first_ip:
            return first_ip
    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip
    return request.remote_addr or "unknown"


@dataclass
class RateLimitResult:
    """Итог проверки лимитов; отказ – обычный результат, а не исключение."""
    allowed: bool
    reason: str
    limit_type: str | None = None
    retry_after: int | None = None
    limit: int | None = None
    current: int | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = data.pop("limit_type")
        return {key: value for key, value in data.items() if value is not None}


@dataclass(frozen=True)
class LimitRule:
    id: int
    name: str
    limit_type: str
    time_window: int
    max_count: int

    @classmethod
    def from_model(cls, limit: SendLimit) -> "LimitRule":
        return cls(limit.id, limit.limit_name, limit.limit_type, limit.time_window, limit.max_count)


def build_bucket_key(limit_type: str, target: str, client_ip: str | None, template_id: str | None) -> str:
    """Формирует ключ счётчика для типа правила."""
    ip = client_ip or "unknown"
    template = template_id or WILDCARD
    if limit_type == "phone":
        return f"phone:{target}"
    if limit_type == "ip":
        return f"ip:{ip}"
    if limit_type == "phone_template":
        return f"phone_template:{target}:{template}"
    if limit_type == "ip_template":
        return f"ip_template:{ip}:{template}"
    if limit_type == "global":
        return "global"
    return f"unknown:{target}"


def _seconds_until(moment: datetime, now: datetime) -> int:
    return max(1, math.ceil((moment - now).total_seconds()))


class RateLimitService:
    """Проверка и учёт лимитов отправки кодов подтверждения."""

    def matching_rules(self, template_id: str | None, purpose: str | None) -> list[LimitRule]:
        """Включённые правила для шаблона и назначения (или `*`), по возрастанию приоритета."""
        limits = (
            SendLimit.query.filter(
                SendLimit.is_enabled.is_(True),
                SendLimit.template_id.in_([template_id or WILDCARD, WILDCARD]),
                SendLimit.purpose.in_([purpose or WILDCARD, WILDCARD]),
            )
            .order_by(SendLimit.priority.asc(), SendLimit.id.asc())
            .all()
        )
        rules = [LimitRule.from_model(limit) for limit in limits]
        if not rules:
            default_rule = parse_rate_limit(current_app.config.get("DEFAULT_RATE_LIMIT"))
            if default_rule:
                max_count, time_window = default_rule
                rules.append(LimitRule(DEFAULT_RULE_ID, "默认发送频率限制", "phone", time_window, max_count))
        return rules

    def is_in_whitelist(self, target: str, now: datetime | None = None) -> bool:
        return self._is_listed(SendWhitelist, target, now or datetime.utcnow())

    def is_in_blacklist(self, target: str, now: datetime | None = None) -> bool:
        return self._is_listed(SendBlacklist, target, now or datetime.utcnow())

    def check_rate_limit(
        self,
        target: str,
        client_ip: str | None,
        template_id: str | None,
        purpose: str | None,
        now: datetime | None = None,
    ) -> RateLimitResult:
        """Проверяет лимиты без изменения счётчиков."""
        now = now or datetime.utcnow()
        listed = self._list_decision(target, now)
        if listed is not None:
            return listed

        rules = self.matching_rules(template_id, purpose)
        if not rules:
            return RateLimitResult(True, "无限制配置")

        for rule in rules:
            key = build_bucket_key(rule.limit_type, target, client_ip, template_id)
            window = self._live_window(rule, key, now)
            if window is not None and window[0] >= rule.max_count:
                return self._denied(rule, window, now)

        return RateLimitResult(True, "通过频率检查")

    def record_send(
        self,
        target: str,
        client_ip: str | None,
        template_id: str | None,
        purpose: str | None,
        now: datetime | None = None,
    ) -> None:
        """Учитывает состоявшуюся отправку во всех подходящих правилах."""
        now = now or datetime.utcnow()
        for _ in range(_RESERVE_ATTEMPTS):
            try:
                for rule in self.matching_rules(template_id, purpose):
                    key = build_bucket_key(rule.limit_type, target, client_ip, template_id)
                    self._increment(rule, key, now, enforce_max=False)
                db.session.commit()
                return
            except IntegrityError:
                db.session.rollback()
        raise RuntimeError("Failed to record send counters after concurrent inserts")

    def reserve_send(
        self,
        target: str,
        client_ip: str | None,
        template_id: str | None,
        purpose: str | None,
        now: datetime | None = None,
    ) -> RateLimitResult:
        """Атомарно проверяет и занимает слот во всех подходящих правилах.

        При отказе любого правила транзакция откатывается и ни один счётчик не меняется.
        Метод фиксирует транзакцию сессии, поэтому вызывается до изменения других данных.
        """
        now = now or datetime.utcnow()
        listed = self._list_decision(target, now)
        if listed is not None:
            return listed

        for _ in range(_RESERVE_ATTEMPTS):
            try:
                rules = self.matching_rules(template_id, purpose)
                for rule in rules:
                    key = build_bucket_key(rule.limit_type, target, client_ip, template_id)
                    if not self._increment(rule, key, now, enforce_max=True):
                        window = self._live_window(rule, key, now)
                        db.session.rollback()
                        return self._denied(rule, window, now)
                db.session.commit()
                return RateLimitResult(True, "通过频率检查" if rules else "无限制配置")
            except IntegrityError:
                db.session.rollback()
        raise RuntimeError("Failed to reserve send quota after concurrent inserts")

    def release_send(
        self,
        target: str,
        client_ip: str | None,
        template_id: str | None,
        purpose: str | None,
        now: datetime | None = None,
    ) -> None:
        """Возвращает слот, занятый `reserve_send`, если код не удалось доставить."""
        now = now or datetime.utcnow()
        if self.is_in_whitelist(target, now):
            return
        for rule in self.matching_rules(template_id, purpose):
            key = build_bucket_key(rule.limit_type, target, client_ip, template_id)
            SendCounter.query.filter(
                SendCounter.limit_id == rule.id,
                SendCounter.bucket_key == key,
                SendCounter.window_expires_at > now,
                SendCounter.count > 0,
            ).update({SendCounter.count: SendCounter.count - 1}, synchronize_session=False)
        db.session.commit()

    def get_remaining_count(
        self,
        target: str,
        client_ip: str | None,
        template_id: str | None,
        purpose: str | None,
        now: datetime | None = None,
    ) -> list[dict]:
        now = now or datetime.utcnow()
        remaining = []
        for rule in self.matching_rules(template_id, purpose):
            key = build_bucket_key(rule.limit_type, target, client_ip, template_id)
            window = self._live_window(rule, key, now)
            current = window[0] if window else 0
            remaining.append(
                {
                    "limit_name": rule.name,
                    "limit_type": rule.limit_type,
                    "max_count": rule.max_count,
                    "current_count": current,
                    "remaining_count": max(0, rule.max_count - current),
                    "time_window": rule.time_window,
                    "reset_in": _seconds_until(window[1], now) if window else 0,
                }
            )
        return remaining

    def clear_limit(self, target: str, client_ip: str | None = None) -> int:
        """Удаляет счётчики контакта (и, при указании, IP); возвращает число удалённых строк."""
        conditions = [
            SendCounter.bucket_key == f"phone:{target}",
            SendCounter.bucket_key.startswith(f"phone_template:{target}:", autoescape=True),
        ]
        if client_ip:
            conditions.append(SendCounter.bucket_key == f"ip:{client_ip}")
            conditions.append(SendCounter.bucket_key.startswith(f"ip_template:{client_ip}:", autoescape=True))
        deleted = SendCounter.query.filter(or_(*conditions)).delete(synchronize_session=False)
        db.session.commit()
        current_app.logger.info("Сброшены счётчики отправки для %s (%s шт.)", target, deleted)
        return deleted

    def add_to_whitelist(self, target: str, reason: str = "", expires_at=None, created_by=None) -> SendWhitelist:
        return self._add_listed(SendWhitelist, target, reason, expires_at, created_by)

    def add_to_blacklist(self, target: str, reason: str = "", expires_at=None, created_by=None) -> SendBlacklist:
        return self._add_listed(SendBlacklist, target, reason, expires_at, created_by)

    def remove_from_whitelist(self, target: str) -> bool:
        return self._remove_listed(SendWhitelist, target)

    def remove_from_blacklist(self, target: str) -> bool:
        return self._remove_listed(SendBlacklist, target)

    def _list_decision(self, target: str, now: datetime) -> RateLimitResult | None:
        if self.is_in_blacklist(target, now):
            return RateLimitResult(False, "该号码已被加入黑名单", "blacklist")
        if self.is_in_whitelist(target, now):
            return RateLimitResult(True, "白名单用户", "whitelist")
        return None

    @staticmethod
    def _is_listed(model, target: str, now: datetime) -> bool:
        return (
            db.session.query(model.id)
            .filter(
                model.target == target,
                model.is_enabled.is_(True),
                or_(model.expires_at.is_(None), model.expires_at > now),
            )
            .first()
            is not None
        )

    @staticmethod
    def _add_listed(model, target, reason, expires_at, created_by):
        entry = model.query.filter_by(target=target).first()
        if entry is None:
            entry = model(target=target)
            db.session.add(entry)
        entry.reason = reason or None
        entry.expires_at = expires_at
        entry.created_by = created_by
        entry.is_enabled = True
        db.session.commit()
        return entry

    @staticmethod
    def _remove_listed(model, target: str) -> bool:
        deleted = model.query.filter_by(target=target).delete(synchronize_session=False)
        db.session.commit()
        return deleted > 0

    @staticmethod
    def _live_window(rule: LimitRule, key: str, now: datetime) -> tuple[int, datetime] | None:
        row = (
            db.session.query(SendCounter.count, SendCounter.window_expires_at)
            .filter(
                SendCounter.limit_id == rule.id,
                SendCounter.bucket_key == key,
                SendCounter.window_expires_at > now,
            )
            .first()
        )
        if row is None:
            return None
        return row[0], row[1]

    @staticmethod
    def _denied(rule: LimitRule, window: tuple[int, datetime] | None, now: datetime) -> RateLimitResult:
        current, expires_at = window if window else (rule.max_count, now + timedelta(seconds=rule.time_window))
        return RateLimitResult(
            allowed=False,
            reason=rule.name,
            limit_type=rule.limit_type,
            retry_after=_seconds_until(expires_at, now),
            limit=rule.max_count,
            current=current,
        )

    @staticmethod
    def _increment(rule: LimitRule, key: str, now: datetime, enforce_max: bool) -> bool:
        """Увеличивает счётчик правила; False – окно уже исчерпано (только при enforce_max)."""
        window_end = now + timedelta(seconds=rule.time_window)
        scope = (SendCounter.limit_id == rule.id, SendCounter.bucket_key == key)

        # Истёкшее окно открывается заново с первой отправкой
        restarted = SendCounter.query.filter(*scope, SendCounter.window_expires_at <= now).update(
            {
                SendCounter.count: 1,
                SendCounter.window_started_at: now,
                SendCounter.window_expires_at: window_end,
            },
            synchronize_session=False,
        )
        if restarted:
            return True

        live = [SendCounter.window_expires_at > now]
        if enforce_max:
            live.append(SendCounter.count < rule.max_count)
        bumped = SendCounter.query.filter(*scope, *live).update(
            {SendCounter.count: SendCounter.count + 1},
            synchronize_session=False,
        )
        if bumped:
            return True

        if db.session.query(SendCounter.id).filter(*scope).first() is not None:
            return False

        db.session.add(
            SendCounter(
                limit_id=rule.id,
                bucket_key=key,
                count=1,
                window_started_at=now,
                window_expires_at=window_end,
            )
        )
        db.session.flush()
        return True


def is_rate_limited(bucket: str, limit: int, window_seconds: int, identity: str | None = None) -> bool:
    """Проверка in-memory лимитера приложения для попыток входа и ввода кодов."""
    limiter = current_app.extensions.get("rate_limiter")
    if limiter is None:
        return False

    rate_identity = identity or get_client_identifier()
    rate_key = f"{bucket}:{rate_identity}"
    return not limiter.is_allowed(rate_key, limit, window_seconds)
