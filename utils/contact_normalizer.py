"""
Модуль: `utils/contact_normalizer.py`.
Назначение: Нормализация, классификация и маскирование телефонов и email.
"""

import re


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
# Мобильные номера материкового Китая
MOBILE_RE = re.compile(r"^1[3-9]\d{9}$")


def _as_text(value) -> str:
    """Номер из JSON может прийти числом; прочие нестроковые значения пусты."""
    if isinstance(value, bool) or value is None:
        return ""
    if isinstance(value, int):
        return str(value)
    return value.strip() if isinstance(value, str) else ""


def normalize_email(value) -> str:
    email = _as_text(value).lower()
    if not email:
        return ""
    if not EMAIL_RE.match(email):
        return ""
    return email


def normalize_phone(value) -> str:
    """Приводит номер к 11 цифрам; префиксы +86/86 и разделители отбрасываются."""
    raw = _as_text(value)
    if not raw:
        return ""

    digits = re.sub(r"\D", "", raw)
    if len(digits) == 13 and digits.startswith("86"):
        digits = digits[2:]
    if not MOBILE_RE.match(digits):
        return ""

    return digits


def normalize_contact(method: str, value: str | None) -> str:
    if method == "email":
        return normalize_email(value)
    if method == "phone":
        return normalize_phone(value)
    return ""


def classify_identifier(identifier: str | None) -> str | None:
    """Возвращает `phone`, `email` или None, если идентификатор не похож ни на то, ни на другое."""
    if not identifier:
        return None
    if MOBILE_RE.match(identifier):
        return "phone"
    if EMAIL_RE.match(identifier.strip().lower()):
        return "email"
    return None


def mask_phone(phone: str) -> str:
    if len(phone) < 7:
        return phone
    return f"{phone[:3]}****{phone[-4:]}"


def mask_email(email: str) -> str:
    local, sep, domain = email.partition("@")
    if not sep:
        return email
    return f"{local[:3]}****@{domain}"


def mask_contact(method: str, value: str) -> str:
    if method == "phone":
        return mask_phone(value)
    return mask_email(value)
