"""
Модуль: `utils/verification_codes.py`.
Назначение: Жизненный цикл кодов подтверждения и их отправка.

Выдача → проверка (FIRST_VERIFIED) → повторная проверка (SECOND_VERIFIED) или
использование (CONSUMED). Каждый запрос фильтруется по назначению кода, а из строк
одного контакта учитывается только последняя. Функции смены статуса не фиксируют
транзакцию: вызывающий сценарий коммитит их вместе со своими изменениями.
"""

import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app

from extensions import db
from models.verification_code import CODE_MODELS, CodeStatus
from utils.code_delivery import send_verification_code
from utils.rate_limit import RateLimitResult, RateLimitService

VERIFIABLE_STATUSES = (CodeStatus.ISSUED, CodeStatus.FIRST_VERIFIED)
COMPLETABLE_STATUSES = (CodeStatus.FIRST_VERIFIED, CodeStatus.SECOND_VERIFIED)

CHANNEL_PREFIXES = {"sms": "SMS", "email": "EML"}


@dataclass
class CodeCheck:
    success: bool
    message: str
    record: object | None = None


@dataclass
class SendOutcome:
    success: bool
    message: str
    record: object | None = None
    rate_limit: RateLimitResult | None = None


def generate_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def make_code_id(channel: str, now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    return f"{CHANNEL_PREFIXES[channel]}_{now:%Y%m%d%H%M%S}_{secrets.token_hex(6)}"


def _model(channel: str):
    try:
        return CODE_MODELS[channel]
    except KeyError:
        raise ValueError(f"Unknown code channel: {channel!r}") from None


def issue_code(
    channel: str,
    target: str,
    purpose: str,
    client_ip: str | None = None,
    template_id: str | None = None,
    ttl: int | None = None,
    now: datetime | None = None,
):
    """Создаёт код в статусе ISSUED."""
    model = _model(channel)
    now = now or datetime.utcnow()
    ttl = int(ttl or current_app.config.get("CODE_TTL_SECONDS", 600))
    record = model(
        code_id=make_code_id(channel, now),
        code=generate_code(),
        purpose=purpose,
        status=int(CodeStatus.ISSUED),
        validity_period=ttl,
        expires_at=now + timedelta(seconds=ttl),
        template_id=template_id,
        client_ip=client_ip,
        created_at=now,
        updated_at=now,
        **{model.target_column: target},
    )
    db.session.add(record)
    db.session.commit()
    return record


def find_active_code(channel: str, target: str, purpose: str, statuses=None):
    """Последний код контакта для назначения; неотправленные коды не учитываются.

    Если задан `statuses`, строка возвращается только когда её статус входит в набор.
    """
    model = _model(channel)
    record = (
        model.query.filter(
            getattr(model, model.target_column) == target,
            model.purpose == purpose,
            model.status != int(CodeStatus.SEND_FAILED),
        )
        .order_by(model.created_at.desc(), model.id.desc())
        .first()
    )
    if record is not None and statuses is not None and record.status not in {int(s) for s in statuses}:
        return None
    return record


def find_code_by_id(channel: str, code_id: str):
    model = _model(channel)
    return model.query.filter_by(code_id=code_id).first()


def verify_code(channel: str, target: str, purpose: str, code: str, now: datetime | None = None) -> CodeCheck:
    """Сверяет код с последним выданным; при совпадении переводит его в FIRST_VERIFIED."""
    now = now or datetime.utcnow()
    if isinstance(code, int) and not isinstance(code, bool):
        code = str(code)
    code = code.strip() if isinstance(code, str) else ""
    if not (code.isdigit() and len(code) == 6):
        return CodeCheck(False, "验证码格式错误")

    record = find_active_code(channel, target, purpose)
    if record is None:
        return CodeCheck(False, "验证码不存在，请先获取验证码")
    if record.status not in {int(s) for s in VERIFIABLE_STATUSES}:
        return CodeCheck(False, "验证码已使用", record)
    if record.is_expired(now):
        return CodeCheck(False, "验证码已过期，请重新获取", record)

    max_attempts = int(current_app.config.get("CODE_MAX_VERIFY_ATTEMPTS", 5))
    if record.verify_count >= max_attempts:
        return CodeCheck(False, "验证错误次数过多，请重新获取验证码", record)

    if not hmac.compare_digest(record.code, code):
        record.verify_count += 1
        record.last_verify_at = now
        db.session.commit()
        return CodeCheck(False, "验证码错误", record)

    record.status = int(CodeStatus.FIRST_VERIFIED)
    record.last_verify_at = now
    db.session.commit()
    return CodeCheck(True, "验证成功", record)


def is_completable(record, now: datetime | None = None) -> bool:
    """Подтверждённый и неистёкший код может завершить сценарий."""
    if record is None:
        return False
    return record.status in {int(s) for s in COMPLETABLE_STATUSES} and not record.is_expired(now)


def mark_second_verified(record) -> None:
    record.status = int(CodeStatus.SECOND_VERIFIED)


def consume_code(record) -> None:
    record.status = int(CodeStatus.CONSUMED)


def mark_send_failed(record, detail: str | None = None) -> None:
    record.status = int(CodeStatus.SEND_FAILED)
    if detail:
        record.send_result = detail


def template_for(purpose: str) -> str:
    return current_app.config.get("SMS_TEMPLATE_IDS", {}).get(purpose, purpose)


def dispatch_code(channel: str, target: str, purpose: str, client_ip: str | None) -> SendOutcome:
    """Резервирует квоту, выдаёт и доставляет код.

    При неудачной доставке код помечается SEND_FAILED, а зарезервированная квота возвращается.
    """
    template_id = template_for(purpose)
    limiter = RateLimitService()
    decision = limiter.reserve_send(target, client_ip, template_id, purpose)
    if not decision.allowed:
        return SendOutcome(False, decision.reason, rate_limit=decision)

    record = issue_code(channel, target, purpose, client_ip=client_ip, template_id=template_id)
    try:
        delivery = send_verification_code(channel, target, record.code, purpose, record.validity_period)
    except Exception:
        # Исключение транспорта: код SEND_FAILED, квота возвращается
        mark_send_failed(record, "delivery error")
        db.session.commit()
        limiter.release_send(target, client_ip, template_id, purpose)
        raise
    record.channel = delivery.transport
    record.send_result = json.dumps(delivery.to_dict(), ensure_ascii=False)
    if not delivery.sent:
        mark_send_failed(record)
        db.session.commit()
        limiter.release_send(target, client_ip, template_id, purpose)
        current_app.logger.warning("Не удалось доставить код %s (%s) на %s", record.code_id, purpose, target)
        return SendOutcome(False, "验证码发送失败，请稍后重试", record, decision)

    db.session.commit()
    current_app.logger.info("Код %s (%s) отправлен через %s", record.code_id, purpose, delivery.transport)
    return SendOutcome(True, "验证码已发送", record, decision)
