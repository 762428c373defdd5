"""
Программа: «Tongxing» – портал учётных записей и верификации.
Модуль: routes/admin.py – API администратора для лимитов отправки и CAPTCHA.

Назначение модуля:
- Правила send_limit, белый и чёрный списки, просмотр остатка квоты и сброс счётчиков.
- Конфигурации провайдеров CAPTCHA.
- Постраничный просмотр журнала проверок CAPTCHA.
"""

from datetime import datetime
from functools import wraps

from flask import request
from flask_login import current_user, login_required

from extensions import db
from models.captcha import CAPTCHA_PROVIDERS, CaptchaConfig, CaptchaVerifyLog
from models.send_limit import LIMIT_TYPES, WILDCARD, SendBlacklist, SendLimit, SendWhitelist
from utils.api_response import api_error, api_ok, json_response, request_json, text_field
from utils.contact_normalizer import normalize_email, normalize_phone
from utils.i18n import local_isoformat
from utils.rate_limit import RateLimitService
from utils.system_logger import log_event

DEFAULT_PAGE_SIZE = 20
MIN_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def admin_required(view):
    """Доступ только для ролей admin/siteadmin с активной учётной записью."""

    @wraps(view)
    @login_required
    def wrapper(*args, **kwargs):
        if not current_user.is_admin or not current_user.is_active:
            return api_error("无权限访问", 403)
        return view(*args, **kwargs)

    return wrapper


def _int_field(data: dict, name: str, default=None):
    value = data.get(name, default)
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_datetime(value) -> tuple[datetime | None, bool]:
    """ISO-строка → datetime; второй элемент False при некорректном значении."""
    if value in (None, ""):
        return None, True
    try:
        return datetime.fromisoformat(str(value)), True
    except ValueError:
        return None, False


def _normalize_target(value) -> str:
    return normalize_phone(value) or normalize_email(value)


def _apply_send_limit(limit: SendLimit, data: dict):
    """Проверяет и переносит поля правила; возвращает сообщение об ошибке или None."""
    limit_name = text_field(data, "limit_name")
    limit_type = text_field(data, "limit_type")
    time_window = _int_field(data, "time_window")
    max_count = _int_field(data, "max_count")
    priority = _int_field(data, "priority", 100)

    if not limit_name:
        return "限制名称不能为空"
    if limit_type not in LIMIT_TYPES:
        return "无效的限制类型"
    if time_window is None or time_window <= 0:
        return "时间窗口必须大于0"
    if max_count is None or max_count <= 0:
        return "最大次数必须大于0"
    if priority is None:
        return "优先级必须为整数"

    limit.limit_name = limit_name
    limit.limit_type = limit_type
    limit.time_window = time_window
    limit.max_count = max_count
    limit.priority = priority
    limit.template_id = text_field(data, "template_id") or WILDCARD
    limit.purpose = text_field(data, "purpose") or WILDCARD
    limit.is_enabled = bool(data.get("is_enabled", True))
    limit.description = text_field(data, "description") or None
    return None


def _apply_captcha_config(config: CaptchaConfig, data: dict):
    name = text_field(data, "name")
    provider = text_field(data, "provider")
    scenes = data.get("scenes") or []
    priority = _int_field(data, "priority", 100)
    status = _int_field(data, "status", 1)

    if not name:
        return "配置名称不能为空"
    if provider not in CAPTCHA_PROVIDERS:
        return "不支持的验证服务商"
    if not isinstance(scenes, list) or not all(isinstance(scene, str) and scene.strip() for scene in scenes):
        return "场景必须为字符串数组"
    if priority is None or status is None:
        return "优先级和状态必须为整数"

    config.name = name
    config.provider = provider
    config.scenes = sorted({scene.strip() for scene in scenes})
    config.priority = priority
    config.status = status
    config.is_enabled = bool(data.get("is_enabled", True))
    for field in ("captcha_id", "captcha_key", "app_id", "app_secret", "site_key", "secret_key"):
        if field in data:
            setattr(config, field, text_field(data, field) or None)
    return None


def _listed_routes(app, kind: str, model):
    """Маршруты белого или чёрного списка."""
    base = f"/admin/api/send-limits/{kind}"
    service = RateLimitService()

    @admin_required
    def list_entries():
        entries = model.query.order_by(model.created_at.desc()).all()
        return api_ok([entry.to_dict() for entry in entries], "获取成功")

    @admin_required
    def add_entry():
        data = request_json()
        target = _normalize_target(data.get("target"))
        if not target:
            return api_error("请输入正确的手机号或邮箱")
        expires_at, ok = _parse_datetime(data.get("expires_at"))
        if not ok:
            return api_error("过期时间格式错误")
        adder = service.add_to_whitelist if kind == "whitelist" else service.add_to_blacklist
        entry = adder(target, text_field(data, "reason"), expires_at, current_user.uuid)
        log_event("admin", f"{kind}_add", user_id=current_user.id, details={"target": target})
        return api_ok(entry.to_dict(), "保存成功")

    @admin_required
    def delete_entry(entry_id: int):
        entry = db.session.get(model, entry_id)
        if entry is None:
            return api_error("记录不存在", 404)
        target = entry.target
        db.session.delete(entry)
        db.session.commit()
        log_event("admin", f"{kind}_delete", user_id=current_user.id, details={"target": target})
        return api_ok(None, "删除成功")

    app.add_url_rule(base, f"admin_{kind}_list", list_entries, methods=["GET"])
    app.add_url_rule(base, f"admin_{kind}_add", add_entry, methods=["POST"])
    app.add_url_rule(f"{base}/<int:entry_id>", f"admin_{kind}_delete", delete_entry, methods=["DELETE"])


def register_routes(app):
    _listed_routes(app, "whitelist", SendWhitelist)
    _listed_routes(app, "blacklist", SendBlacklist)

    @app.get("/admin/api/send-limits")
    @admin_required
    def send_limit_list():
        limits = SendLimit.query.order_by(SendLimit.priority.asc(), SendLimit.id.asc()).all()
        return api_ok([limit.to_dict() for limit in limits], "获取成功")

    @app.post("/admin/api/send-limits")
    @admin_required
    def send_limit_create():
        limit = SendLimit()
        error = _apply_send_limit(limit, request_json())
        if error:
            return api_error(error)
        db.session.add(limit)
        db.session.commit()
        log_event("admin", "send_limit_create", user_id=current_user.id, details={"id": limit.id})
        return api_ok(limit.to_dict(), "保存成功")

    @app.get("/admin/api/send-limits/<int:limit_id>")
    @admin_required
    def send_limit_detail(limit_id: int):
        limit = db.session.get(SendLimit, limit_id)
        if limit is None:
            return api_error("限制规则不存在", 404)
        return api_ok(limit.to_dict(), "获取成功")

    @app.put("/admin/api/send-limits/<int:limit_id>")
    @admin_required
    def send_limit_update(limit_id: int):
        limit = db.session.get(SendLimit, limit_id)
        if limit is None:
            return api_error("限制规则不存在", 404)
        error = _apply_send_limit(limit, request_json())
        if error:
            db.session.rollback()
            return api_error(error)
        db.session.commit()
        log_event("admin", "send_limit_update", user_id=current_user.id, details={"id": limit.id})
        return api_ok(limit.to_dict(), "保存成功")

    @app.delete("/admin/api/send-limits/<int:limit_id>")
    @admin_required
    def send_limit_delete(limit_id: int):
        limit = db.session.get(SendLimit, limit_id)
        if limit is None:
            return api_error("限制规则不存在", 404)
        db.session.delete(limit)
        db.session.commit()
        log_event("admin", "send_limit_delete", user_id=current_user.id, details={"id": limit_id})
        return api_ok(None, "删除成功")

    @app.get("/admin/api/send-limits/remaining")
    @admin_required
    def send_limit_remaining():
        target = _normalize_target(request.args.get("target"))
        if not target:
            return api_error("请输入正确的手机号或邮箱")
        remaining = RateLimitService().get_remaining_count(
            target,
            request.args.get("ip") or None,
            request.args.get("template_id") or None,
            request.args.get("purpose") or None,
        )
        return api_ok(remaining, "获取成功")

    @app.post("/admin/api/send-limits/clear")
    @admin_required
    def send_limit_clear():
        data = request_json()
        target = _normalize_target(data.get("target"))
        if not target:
            return api_error("请输入正确的手机号或邮箱")
        cleared = RateLimitService().clear_limit(target, text_field(data, "ip") or None)
        log_event("admin", "send_limit_clear", user_id=current_user.id, details={"target": target})
        return api_ok({"cleared": cleared}, "已清除限制")

    @app.get("/admin/api/captcha-configs")
    @admin_required
    def captcha_config_list():
        configs = CaptchaConfig.query.order_by(CaptchaConfig.priority.asc(), CaptchaConfig.id.asc()).all()
        return api_ok([config.to_dict() for config in configs], "获取成功")

    @app.post("/admin/api/captcha-configs")
    @admin_required
    def captcha_config_create():
        config = CaptchaConfig()
        error = _apply_captcha_config(config, request_json())
        if error:
            return api_error(error)
        db.session.add(config)
        db.session.commit()
        log_event("admin", "captcha_config_create", user_id=current_user.id, details={"id": config.id})
        return api_ok(config.to_dict(), "保存成功")

    @app.get("/admin/api/captcha-configs/<int:config_id>")
    @admin_required
    def captcha_config_detail(config_id: int):
        config = db.session.get(CaptchaConfig, config_id)
        if config is None:
            return api_error("配置不存在", 404)
        return api_ok(config.to_dict(include_secrets=True), "获取成功")

    @app.put("/admin/api/captcha-configs/<int:config_id>")
    @admin_required
    def captcha_config_update(config_id: int):
        config = db.session.get(CaptchaConfig, config_id)
        if config is None:
            return api_error("配置不存在", 404)
        error = _apply_captcha_config(config, request_json())
        if error:
            db.session.rollback()
            return api_error(error)
        db.session.commit()
        log_event("admin", "captcha_config_update", user_id=current_user.id, details={"id": config.id})
        return api_ok(config.to_dict(), "保存成功")

    @app.delete("/admin/api/captcha-configs/<int:config_id>")
    @admin_required
    def captcha_config_delete(config_id: int):
        config = db.session.get(CaptchaConfig, config_id)
        if config is None:
            return api_error("配置不存在", 404)
        CaptchaVerifyLog.query.filter_by(config_id=config_id).update(
            {CaptchaVerifyLog.config_id: None}, synchronize_session=False
        )
        db.session.delete(config)
        db.session.commit()
        log_event("admin", "captcha_config_delete", user_id=current_user.id, details={"id": config_id})
        return api_ok(None, "删除成功")

    @app.get("/admin/api/captcha-logs")
    @admin_required
    def captcha_log_list():
        page = max(1, request.args.get("page", 1, type=int) or 1)
        page_size = request.args.get("page_size", DEFAULT_PAGE_SIZE, type=int) or DEFAULT_PAGE_SIZE
        page_size = min(MAX_PAGE_SIZE, max(MIN_PAGE_SIZE, page_size))

        query = CaptchaVerifyLog.query
        for field in ("provider", "scene", "phone", "email"):
            value = (request.args.get(field) or "").strip()
            if value:
                query = query.filter(getattr(CaptchaVerifyLog, field) == value)
        verify_success = (request.args.get("verify_success") or "").strip().lower()
        if verify_success in {"true", "1"}:
            query = query.filter(CaptchaVerifyLog.verify_success.is_(True))
        elif verify_success in {"false", "0"}:
            query = query.filter(CaptchaVerifyLog.verify_success.is_(False))

        pagination = query.order_by(CaptchaVerifyLog.created_at.desc(), CaptchaVerifyLog.id.desc()).paginate(
            page=page, per_page=page_size, error_out=False
        )
        items = []
        for log in pagination.items:
            item = log.to_dict()
            item["created_at_local"] = local_isoformat(log.created_at)
            items.append(item)
        return json_response(
            True,
            {
                "items": items,
                "total": pagination.total,
                "page": page,
                "page_size": page_size,
                "total_pages": pagination.pages,
            },
            "获取成功",
        )

    @app.get("/admin/api/captcha-logs/<int:log_id>")
    @admin_required
    def captcha_log_detail(log_id: int):
        log = db.session.get(CaptchaVerifyLog, log_id)
        if log is None:
            return api_error("日志不存在", 404)
        item = log.to_dict()
        item["captcha_output"] = log.captcha_output
        item["pass_token"] = log.pass_token
        item["gen_time"] = log.gen_time
        item["created_at_local"] = local_isoformat(log.created_at)
        return api_ok(item, "获取成功")
