import json
import logging
import re
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from .config import LOG_JSON, LOG_LEVEL

_request_id_ctx: ContextVar[Optional[str]] = ContextVar('request_id', default=None)


def set_request_id(value: Optional[str]):
    return _request_id_ctx.set(value)


def reset_request_id(token) -> None:
    _request_id_ctx.reset(token)


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()


def _safe_json(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _safe_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_json(v) for v in value]
    return str(value)


def _event_of(record: logging.LogRecord) -> Tuple[Optional[str], Dict[str, Any]]:
    fields = getattr(record, 'event_fields', None)
    return getattr(record, 'event_name', None), fields if isinstance(fields, dict) else {}


class PlainTextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        event_name, fields = _event_of(record)
        head = f"[{record.levelname}] {event_name or record.name}"
        rid = get_request_id()
        if rid:
            head += f" request_id={rid}"
        tail = ' '.join(f"{k}={_safe_json(v)}" for k, v in fields.items())
        return f"{head} {record.getMessage()} {tail}".strip()


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        event_name, fields = _event_of(record)
        payload: Dict[str, Any] = {
            'ts': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'event': event_name,
            'request_id': get_request_id(),
            'message': record.getMessage(),
        }
        payload = {k: v for k, v in payload.items() if v is not None}
        payload.update(_safe_json(fields))
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


# Account and card numbers as printed on statements, optionally grouped.
ACCOUNT_NUMBER_RE = re.compile(r"\b\d(?:[ -]?\d){8,18}\b")
SENSITIVE_KEY_PARTS = ('password', 'token', 'cookie', 'secret', 'authorization')


def mask_account_number(value: str) -> str:
    digits = re.sub(r"\D", "", value or '')
    if len(digits) < 8:
        return value
    return '*' * (len(digits) - 4) + digits[-4:]


def mask_numbers_in_text(value: str) -> str:
    return ACCOUNT_NUMBER_RE.sub(lambda m: mask_account_number(m.group(0)), value)


def _sanitize_log_field(key: Optional[str], value: Any) -> Any:
    key_l = (key or '').lower()
    if any(part in key_l for part in SENSITIVE_KEY_PARTS):
        return '[REDACTED]' if value else value
    if isinstance(value, dict):
        return {str(k): _sanitize_log_field(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_sanitize_log_field(key, v) for v in value]
    if isinstance(value, str):
        return mask_numbers_in_text(value)
    return value


_logger: Optional[logging.Logger] = None


def configure_logging() -> logging.Logger:
    global _logger
    if _logger is not None:
        return _logger

    logger = logging.getLogger('ledgerflow')
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    logger.propagate = False
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter() if LOG_JSON else PlainTextFormatter())
        logger.addHandler(handler)
    _logger = logger
    return logger


def get_logger() -> logging.Logger:
    return configure_logging()


def log_event(level: str, event_name: str, **fields: Any) -> None:
    logger = get_logger()
    log_fn = getattr(logger, level.lower(), logger.info)
    safe_fields = {k: _sanitize_log_field(k, v) for k, v in fields.items()}
    log_fn(event_name, extra={'event_name': event_name, 'event_fields': safe_fields})
