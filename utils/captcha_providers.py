"""
Модуль: `utils/captcha_providers.py`.
Назначение: Серверная проверка ответов CAPTCHA у внешних провайдеров.

Каждый провайдер – отдельный класс с методом `verify`; реестр `PROVIDERS`
сопоставляет поле `provider` конфигурации с реализацией. Повторных попыток нет:
сетевой сбой, ответ не 200 или некорректный JSON означают неуспешную проверку.
"""

import hashlib
import hmac
import json
import secrets
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field

from flask import current_app

from models.captcha import CaptchaConfig


@dataclass
class CaptchaResult:
    """Результат проверки: `lot_number` – доказательство, которое можно предъявить повторно."""
    success: bool
    message: str
    lot_number: str | None = None
    response: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {"success": self.success, "message": self.message}
        if self.lot_number:
            data["lot_number"] = self.lot_number
        if self.response:
            data["response"] = self.response
        return data


class ProviderHTTPError(Exception):
    """Провайдер недоступен или вернул неожиданный ответ."""


def _http_json(url: str, data: dict | None = None) -> dict:
    """GET (без `data`) или form POST с разбором JSON-ответа."""
    body = urllib.parse.urlencode(data).encode("utf-8") if data is not None else None
    headers = {"Accept": "application/json"}
    if body is not None:
        headers["Content-Type"] = "application/x-www-form-urlencoded"
    request = urllib.request.Request(url, data=body, headers=headers, method="POST" if body is not None else "GET")
    timeout = int(current_app.config.get("CAPTCHA_HTTP_TIMEOUT", 10))
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            status = getattr(response, "status", 0)
            raw = response.read()
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        raise ProviderHTTPError(str(exc)) from exc

    snippet = raw[:200].decode("utf-8", errors="replace")
    if status != 200:
        raise ProviderHTTPError(f"HTTP {status}: {snippet}")
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise ProviderHTTPError(f"Malformed JSON: {snippet}") from exc
    if not isinstance(payload, dict):
        raise ProviderHTTPError(f"Unexpected JSON: {snippet}")
    return payload


class CaptchaProvider:
    """Базовый класс провайдера."""

    name = ""
    label = ""

    def verify(self, config: CaptchaConfig, payload: dict, client_ip: str | None) -> CaptchaResult:
        raise NotImplementedError

    def public_config(self, config: CaptchaConfig) -> dict:
        return {"site_key": config.effective_site_key}

    def _unavailable(self, exc: ProviderHTTPError) -> CaptchaResult:
        current_app.logger.warning("Ошибка обращения к провайдеру CAPTCHA %s: %s", self.name, exc)
        return CaptchaResult(False, f"{self.label} 服务器响应异常")


class GeetestProvider(CaptchaProvider):
    """Geetest v4: подпись lot_number ключом HMAC-SHA256 и запрос к /validate."""

    name = "geetest"
    label = "极验"
    validate_url = "https://gcaptcha4.geetest.com/validate"
    fields = ("lot_number", "captcha_output", "pass_token", "gen_time")

    @staticmethod
    def sign(captcha_key: str, lot_number: str) -> str:
        return hmac.new(captcha_key.encode("utf-8"), lot_number.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify(self, config, payload, client_ip):
        values = {name: str(payload.get(name) or "").strip() for name in self.fields}
        if not all(values.values()):
            return CaptchaResult(False, "缺少极验验证参数")

        query = urllib.parse.urlencode(
            {
                "captcha_id": config.effective_captcha_id,
                **values,
                "sign_token": self.sign(config.effective_captcha_key, values["lot_number"]),
            }
        )
        try:
            result = _http_json(f"{self.validate_url}?{query}")
        except ProviderHTTPError as exc:
            return self._unavailable(exc)

        if result.get("result") == "success":
            return CaptchaResult(True, "验证成功", values["lot_number"], result)
        return CaptchaResult(False, result.get("reason") or "极验验证失败", response=result)

    def public_config(self, config):
        return {
            "captcha_id": config.effective_captcha_id,
            "product": "bind",
            "protocol": "https://",
        }


class SiteverifyProvider(CaptchaProvider):
    """Провайдеры с общим протоколом siteverify (secret, response, remoteip)."""

    verify_url = ""
    token_field = ""
    proof_prefix = ""

    def verify(self, config, payload, client_ip):
        token = str(payload.get(self.token_field) or "").strip()
        if not token:
            return CaptchaResult(False, f"缺少 {self.label} 验证 token")

        form = {"secret": config.effective_secret_key, "response": token}
        if client_ip:
            form["remoteip"] = client_ip
        try:
            result = _http_json(self.verify_url, form)
        except ProviderHTTPError as exc:
            return self._unavailable(exc)

        if result.get("success") is True:
            return CaptchaResult(True, "验证成功", self.make_proof(), result)

        error_codes = result.get("error-codes") or []
        current_app.logger.info("%s отклонил токен: %s", self.label, error_codes)
        return CaptchaResult(False, self.failure_message(error_codes), response=result)

    def make_proof(self) -> str:
        return f"{self.proof_prefix}_{int(time.time())}_{secrets.token_hex(16)}"

    def failure_message(self, error_codes: list) -> str:
        return f"{self.label} 验证失败"


class TurnstileProvider(SiteverifyProvider):
    name = "turnstile"
    label = "Turnstile"
    verify_url = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
    token_field = "turnstile_token"
    proof_prefix = "TURNSTILE"

    def failure_message(self, error_codes):
        if "timeout-or-duplicate" in error_codes:
            return "验证已过期或重复使用"
        if "invalid-input-response" in error_codes:
            return "无效的验证 token"
        return super().failure_message(error_codes)


class RecaptchaProvider(SiteverifyProvider):
    name = "recaptcha"
    label = "reCAPTCHA"
    verify_url = "https://www.google.com/recaptcha/api/siteverify"
    token_field = "recaptcha_token"
    proof_prefix = "RECAPTCHA"


class HcaptchaProvider(SiteverifyProvider):
    name = "hcaptcha"
    label = "hCaptcha"
    verify_url = "https://hcaptcha.com/siteverify"
    token_field = "hcaptcha_token"
    proof_prefix = "HCAPTCHA"


PROVIDERS: dict[str, CaptchaProvider] = {
    provider.name: provider
    for provider in (GeetestProvider(), TurnstileProvider(), RecaptchaProvider(), HcaptchaProvider())
}


def get_provider(name: str | None) -> CaptchaProvider | None:
    return PROVIDERS.get(name or "")
