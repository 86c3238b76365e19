from app.core.settings import get_settings


def normalize_phone(phone: str) -> str:
    digits = "".join(ch for ch in phone if ch.isdigit())
    if not digits:
        return ""
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return f"+{digits}"


def is_placeholder_phone(phone: str | None) -> bool:
    return not phone or phone == get_settings().placeholder_phone


def caller_phone_or_placeholder(raw: str | None) -> str:
    normalized = normalize_phone(raw) if raw else ""
    return normalized or get_settings().placeholder_phone
