"""
Модуль: `utils/captcha.py`.
Назначение: Выбор конфигурации CAPTCHA, проверка ответа, журнал проверок и повторное
предъявление успешной проверки (second verification).

Успешная запись журнала действует `CAPTCHA_PROOF_TTL_SECONDS` и может быть предъявлена
на следующем шаге сценария вместо нового прохождения CAPTCHA. Сценарий при повторном
предъявлении не сравнивается: проверка на шаге отправки кода засчитывается шагу регистрации.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app, has_request_context, request
from sqlalchemy import not_, or_

from extensions import db
from models.captcha import SECOND_VERIFY_SUFFIX, CaptchaConfig, CaptchaVerifyLog
from utils.captcha_providers import CaptchaResult, GeetestProvider, get_provider
from utils.contact_normalizer import classify_identifier


@dataclass
class SecondVerifyResult:
    success: bool
    message: str
    log_id: int | None = None
    original_scene: str | None = None


class CaptchaService:
    """Операции над конфигурациями и журналом CAPTCHA."""

    def get_captcha_config(self, scene: str) -> CaptchaConfig | None:
        """Активная конфигурация с наименьшим приоритетом, обслуживающая сценарий."""
        candidates = (
            CaptchaConfig.query.filter(
                CaptchaConfig.status == 1,
                CaptchaConfig.is_enabled.is_(True),
            )
            .order_by(CaptchaConfig.priority.asc(), CaptchaConfig.id.asc())
            .all()
        )
        # Сценарии хранятся в JSON; фильтрация в Python одинакова для SQLite и PostgreSQL
        for config in candidates:
            if config.serves_scene(scene):
                return config
        return None

    def public_config(self, config: CaptchaConfig | None) -> dict:
        """Несекретные параметры для инициализации виджета на клиенте."""
        if config is None:
            return {"enabled": False, "message": "人机验证未启用"}
        provider = get_provider(config.provider)
        if provider is None:
            raise ValueError(f"不支持的验证服务商: {config.provider}")
        return {"enabled": True, "provider": config.provider, **provider.public_config(config)}

    def verify_captcha(self, config: CaptchaConfig | None, payload: dict, client_ip: str | None) -> CaptchaResult:
        if config is None:
            if current_app.config.get("REQUIRE_CAPTCHA"):
                return CaptchaResult(False, "人机验证未配置")
            return CaptchaResult(True, "人机验证未启用")

        provider = get_provider(config.provider)
        if provider is None:
            return CaptchaResult(False, f"不支持的验证服务商: {config.provider}")
        return provider.verify(config, payload or {}, client_ip)

    def save_verify_log(
        self,
        config: CaptchaConfig,
        scene: str,
        payload: dict,
        success: bool,
        client_ip: str | None,
        identifier: str | None = None,
        result: CaptchaResult | None = None,
    ) -> int:
        """Сохраняет запись о проверке и возвращает её id."""
        payload = payload or {}
        log = CaptchaVerifyLog(
            config_id=config.id,
            scene=scene,
            provider=config.provider,
            verify_success=bool(success),
            verify_result=json.dumps(result.to_dict(), ensure_ascii=False) if result else None,
            error_message=None if success else (result.message if result else "验证失败"),
            client_ip=client_ip,
            user_agent=_user_agent(),
            expires_at=datetime.utcnow() + timedelta(seconds=self._proof_ttl()),
        )

        if config.provider == GeetestProvider.name:
            log.lot_number = payload.get("lot_number") or None
            log.captcha_output = payload.get("captcha_output") or None
            log.pass_token = payload.get("pass_token") or None
            log.gen_time = str(payload.get("gen_time") or "") or None
        else:
            provider = get_provider(config.provider)
            token_field = getattr(provider, "token_field", "")
            log.challenge = (payload.get(token_field) if token_field else None) or None
            if success and result is not None:
                log.lot_number = result.lot_number

        _assign_identifier(log, identifier)
        db.session.add(log)
        db.session.commit()
        return log.id

    def verify_second_time(
        self,
        token: str,
        identifier: str,
        provider: str,
        scene: str,
        client_ip: str | None,
    ) -> SecondVerifyResult:
        """Повторно предъявляет успешную неистёкшую проверку."""
        now = datetime.utcnow()
        single_use = bool(current_app.config.get("CAPTCHA_PROOF_SINGLE_USE"))

        query = CaptchaVerifyLog.query.filter(
            or_(CaptchaVerifyLog.lot_number == token, CaptchaVerifyLog.challenge == token),
            or_(CaptchaVerifyLog.phone == identifier, CaptchaVerifyLog.email == identifier),
            CaptchaVerifyLog.provider == provider,
            CaptchaVerifyLog.verify_success.is_(True),
            CaptchaVerifyLog.expires_at > now,
            not_(CaptchaVerifyLog.scene.endswith(SECOND_VERIFY_SUFFIX, autoescape=True)),
        )
        if single_use:
            query = query.filter(CaptchaVerifyLog.redeemed_at.is_(None))
        original = query.order_by(CaptchaVerifyLog.created_at.desc(), CaptchaVerifyLog.id.desc()).first()

        if original is None:
            current_app.logger.warning(
                "Повторная проверка CAPTCHA не пройдена: provider=%s scene=%s identifier=%s",
                provider,
                scene,
                identifier,
            )
            self._save_second_verify_log(None, scene, provider, token, identifier, False, "验证已过期或不存在", client_ip)
            return SecondVerifyResult(False, "验证已过期或不存在")

        if single_use:
            original.redeemed_at = now
        log_id = self._save_second_verify_log(
            original, scene, provider, token, identifier, True, "二次验证成功", client_ip
        )
        current_app.logger.info(
            "Повторная проверка CAPTCHA пройдена: log_id=%s original_scene=%s scene=%s",
            original.id,
            original.scene,
            scene,
        )
        return SecondVerifyResult(True, "验证成功", log_id=log_id, original_scene=original.scene)

    def _save_second_verify_log(
        self,
        original: CaptchaVerifyLog | None,
        scene: str,
        provider: str,
        token: str,
        identifier: str | None,
        success: bool,
        message: str,
        client_ip: str | None,
    ) -> int:
        verify_result = {
            "second_verify": True,
            "original_log_id": original.id if original else None,
            "original_scene": original.scene if original else None,
            "current_scene": scene,
            "message": message,
        }
        log = CaptchaVerifyLog(
            config_id=original.config_id if original else None,
            scene=f"{scene}{SECOND_VERIFY_SUFFIX}",
            provider=provider,
            verify_success=success,
            verify_result=json.dumps(verify_result, ensure_ascii=False),
            error_message=None if success else message,
            client_ip=client_ip,
            user_agent=_user_agent(),
            original_log_id=original.id if original else None,
        )
        if provider == GeetestProvider.name:
            log.lot_number = token
        else:
            log.challenge = token
        _assign_identifier(log, identifier)
        db.session.add(log)
        db.session.commit()
        return log.id

    @staticmethod
    def _proof_ttl() -> int:
        return int(current_app.config.get("CAPTCHA_PROOF_TTL_SECONDS", 900))


def _assign_identifier(log: CaptchaVerifyLog, identifier: str | None) -> None:
    kind = classify_identifier(identifier)
    if kind == "phone":
        log.phone = identifier
    elif kind == "email":
        log.email = identifier


def _user_agent() -> str | None:
    if not has_request_context():
        return None
    agent = request.headers.get("User-Agent")
    return agent[:255] if agent else None


def check_request_captcha(scene: str, data: dict, identifier: str | None, client_ip: str | None) -> CaptchaResult:
    """Проверяет CAPTCHA из тела запроса и журналирует попытку, если сценарий защищён."""
    service = CaptchaService()
    config = service.get_captcha_config(scene)
    payload = captcha_payload(data)
    result = service.verify_captcha(config, payload, client_ip)
    if config is not None:
        service.save_verify_log(config, scene, payload, result.success, client_ip, identifier, result)
    return result


def captcha_payload(data: dict) -> dict:
    """Извлекает из тела запроса поля ответа CAPTCHA всех провайдеров."""
    names = (
        "lot_number",
        "captcha_output",
        "pass_token",
        "gen_time",
        "turnstile_token",
        "recaptcha_token",
        "hcaptcha_token",
    )
    return {name: data[name] for name in names if data.get(name) not in (None, "")}
