"""
Structured logging for the booking and payment pipeline.

JSON lines in production, plain text in development. Booking and M-Pesa
identifiers are promoted to top-level keys so a payment can be traced
from admission through the callback to reconciliation, e.g.

    {"level": "INFO", "event": "callback_reconciled",
     "checkout_request_id": "ws_CO_...", "booking_id": "...", "outcome": "confirmed"}
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from contextvars import ContextVar

request_id_var: ContextVar[str] = ContextVar('request_id', default='')
user_id_var: ContextVar[str] = ContextVar('user_id', default='')

# Record attributes copied verbatim into the JSON line
TRACE_FIELDS = (
    "event", "booking_id", "item_id", "checkout_request_id",
    "callback_id", "outcome", "old_status", "new_status",
)


def mask_phone(phone: Optional[str]) -> Optional[str]:
    """2547XXXXX678 style masking for guest phone numbers in logs"""
    if not phone or len(phone) < 7:
        return phone
    return f"{phone[:4]}{'X' * (len(phone) - 7)}{phone[-3:]}"


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id
        user_id = user_id_var.get()
        if user_id:
            log_data["user_id"] = user_id

        for field_name in TRACE_FIELDS:
            value = getattr(record, field_name, None)
            if value is not None:
                log_data[field_name] = value

        details = getattr(record, "details", None)
        if details:
            log_data["details"] = details

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """Emits named pipeline events with their identifiers as record attributes."""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs

    def event(self, name: str, msg: str, level: int = logging.INFO, details: Optional[dict] = None, **fields):
        extra = {k: v for k, v in fields.items() if k in TRACE_FIELDS and v is not None}
        extra["event"] = name
        if details:
            extra["details"] = details
        self.log(level, msg, extra=extra)

    def booking_admitted(self, booking_id: str, item_id: str, slots: int, total_amount: float):
        self.event(
            "booking_admitted",
            f"Booking admitted: {slots} slot(s) on {item_id}",
            booking_id=booking_id,
            item_id=item_id,
            details={"slots": slots, "total_amount": total_amount}
        )

    def booking_status_changed(self, booking_id: str, old_status: str, new_status: str):
        self.event(
            "booking_status_changed",
            f"Booking status changed: {old_status} -> {new_status}",
            booking_id=booking_id,
            old_status=old_status,
            new_status=new_status
        )

    def callback_reconciled(self, checkout_request_id: str, outcome: str, booking_id: Optional[str] = None):
        # Overflow and late-payment outcomes mean money has to go back
        level = logging.WARNING if outcome in ("post_payment_overflow", "late_payment_refund") else logging.INFO
        self.event(
            "callback_reconciled",
            f"Callback {checkout_request_id} reconciled: {outcome}",
            level=level,
            checkout_request_id=checkout_request_id,
            booking_id=booking_id,
            outcome=outcome
        )


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure the root handler once at startup (API and worker).

    Args:
        level: Log level name
        json_format: JSON lines (production) or plain text
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    for logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        logging.getLogger(logger_name).handlers = [handler]

    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "apscheduler"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name), {})


def set_request_context(request_id: str, user_id: Optional[str] = None):
    request_id_var.set(request_id)
    if user_id:
        user_id_var.set(user_id)


def clear_request_context():
    request_id_var.set('')
    user_id_var.set('')
