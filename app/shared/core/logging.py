import re
import sys
import structlog
import logging
from typing import Any, cast
from app.shared.core.config import get_settings

_EMAIL_REGEX = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
_PHONE_REGEX = re.compile(
    r"(?<!\w)(?:\+?\d{1,3}[\s.-]?)?(?:\(?\d{2,4}\)?[\s.-]?){2,4}\d{2,4}(?!\w)"
)
# Credentials that can surface inside free-text messages (provider errors, URLs).
_AWS_KEY_ID_REGEX = re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")
_WEBHOOK_REGEX = re.compile(r"https://[\w.-]+/services/[^\s\"']+")
_SENSITIVE_FIELDS = {
    "password",
    "token",
    "secret",
    "authorization",
    "api_key",
    "access_key",
    "secret_key",
    "aws_access_key_id",
    "aws_secret_access_key",
    "encryption_key",
    "webhook_url",
    "private_key",
}
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_key")
_SENSITIVE_FRAGMENTS = ("authorization", "secret", "token", "password")


def _is_sensitive_key(key: Any) -> bool:
    key_norm = str(key).lower().strip().replace("-", "_")
    if key_norm in _SENSITIVE_FIELDS:
        return True
    if key_norm.endswith(_SENSITIVE_SUFFIXES):
        return True
    return any(fragment in key_norm for fragment in _SENSITIVE_FRAGMENTS)


def _redact_text(text: str) -> str:
    text = _WEBHOOK_REGEX.sub("[WEBHOOK_REDACTED]", text)
    text = _AWS_KEY_ID_REGEX.sub("[AWS_KEY_REDACTED]", text)
    text = _EMAIL_REGEX.sub("[EMAIL_REDACTED]", text)

    # Only plausible phone numbers; leaves timestamps and UUID fragments alone.
    def _replace_phone(match: re.Match[str]) -> str:
        candidate = match.group(0)
        digits = re.sub(r"\D", "", candidate)
        looks_like_phone = len(digits) >= 10 and (
            candidate.strip().startswith("+")
            or any(ch in candidate for ch in (" ", "-", ".", "(", ")"))
        )
        return "[PHONE_REDACTED]" if looks_like_phone else candidate

    return _PHONE_REGEX.sub(_replace_phone, text)


def _is_identifier_key(key: Any) -> bool:
    key_norm = str(key).lower()
    return key_norm == "id" or key_norm.endswith("_id")


def _redact(data: Any) -> Any:
    if isinstance(data, dict):
        redacted = {}
        for k, v in data.items():
            if _is_sensitive_key(k):
                redacted[k] = "[REDACTED]"
            elif _is_identifier_key(k) and isinstance(v, str):
                # UUIDs and provider ids would trip the phone heuristic.
                redacted[k] = v
            else:
                redacted[k] = _redact(v)
        return redacted
    if isinstance(data, list):
        return [_redact(item) for item in data]
    if isinstance(data, str):
        return _redact_text(data)
    return data


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact contact details and credential material from log events.
    Cloud keys and webhook URLs must never reach log sinks.
    """
    redacted = _redact(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        pii_redactor,
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging (celery, botocore) through the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )
