"""
M-Pesa Callback Receiver (fast path)

1. Verify the optional shared callback token
2. Parse Body.stkCallback
3. Persist the raw callback to MpesaCallbackLog
4. Return; reconciliation is a separate step

Malformed payloads and token failures are still stored (status
"rejected") for audit, but never reconciled. M-Pesa always receives
{"ResultCode": 0, "ResultDesc": "Accepted"}.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.payment import MpesaCallbackLog, CallbackStatus

logger = logging.getLogger(__name__)

ACCEPTED_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


class MalformedCallback(ValueError):
    pass


@dataclass
class ParsedCallback:
    checkout_request_id: str
    merchant_request_id: Optional[str]
    result_code: int
    result_desc: Optional[str]
    mpesa_receipt_number: Optional[str] = None
    amount: Optional[Decimal] = None
    phone_number: Optional[str] = None


@dataclass
class CallbackReceiveResult:
    success: bool
    callback_log_id: Optional[str] = None
    rejected: bool = False
    error: Optional[str] = None


def _metadata_items(stk_callback: Dict[str, Any]) -> Dict[str, Any]:
    metadata = stk_callback.get("CallbackMetadata") or {}
    items = metadata.get("Item") or []
    values = {}
    for item in items:
        if isinstance(item, dict) and "Name" in item:
            values[item["Name"]] = item.get("Value")
    return values


def parse_stk_callback(payload: Any) -> ParsedCallback:
    """
    Extract the fields reconciliation needs from a Daraja STK callback.

    Raises:
        MalformedCallback: payload is missing Body.stkCallback,
            CheckoutRequestID or an integer ResultCode
    """
    if not isinstance(payload, dict):
        raise MalformedCallback("payload is not a JSON object")
    body = payload.get("Body")
    stk_callback = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk_callback, dict):
        raise MalformedCallback("missing Body.stkCallback")

    checkout_request_id = stk_callback.get("CheckoutRequestID")
    if not checkout_request_id or not isinstance(checkout_request_id, str):
        raise MalformedCallback("missing CheckoutRequestID")

    try:
        result_code = int(stk_callback.get("ResultCode"))
    except (TypeError, ValueError):
        raise MalformedCallback("ResultCode is not an integer")

    items = _metadata_items(stk_callback)
    amount = None
    if items.get("Amount") is not None:
        try:
            amount = Decimal(str(items["Amount"]))
        except InvalidOperation:
            amount = None

    phone = items.get("PhoneNumber")
    return ParsedCallback(
        checkout_request_id=checkout_request_id,
        merchant_request_id=stk_callback.get("MerchantRequestID"),
        result_code=result_code,
        result_desc=stk_callback.get("ResultDesc"),
        mpesa_receipt_number=items.get("MpesaReceiptNumber"),
        amount=amount,
        phone_number=str(phone) if phone is not None else None
    )


def verify_callback_token(token: Optional[str]) -> bool:
    """No token configured means every callback is accepted"""
    expected = settings.mpesa_callback_token
    if not expected:
        return True
    return bool(token) and secrets.compare_digest(token, expected)


class MpesaCallbackReceiver:

    def __init__(self, db: Session, request_id: Optional[str] = None):
        self.db = db
        self.request_id = request_id or "no-request-id"

    def _store(self, **fields) -> MpesaCallbackLog:
        log = MpesaCallbackLog(
            received_at=datetime.utcnow(),
            max_attempts=settings.reconciliation_max_attempts,
            **fields
        )
        self.db.add(log)
        self.db.commit()
        self.db.refresh(log)
        return log

    def receive(self, payload: Any, token: Optional[str] = None) -> CallbackReceiveResult:
        """Persist a callback. Never raises for bad input."""
        raw = payload if isinstance(payload, (dict, list)) else {"raw": str(payload)}

        try:
            if not verify_callback_token(token):
                logger.warning(f"[{self.request_id}] M-Pesa callback with invalid token, not processing")
                log = self._store(
                    raw_payload=raw,
                    status=CallbackStatus.REJECTED.value,
                    error_message="invalid callback token"
                )
                return CallbackReceiveResult(success=True, callback_log_id=log.id, rejected=True)

            try:
                parsed = parse_stk_callback(payload)
            except MalformedCallback as e:
                logger.warning(f"[{self.request_id}] Malformed M-Pesa callback: {e}")
                log = self._store(
                    raw_payload=raw,
                    status=CallbackStatus.REJECTED.value,
                    error_message=f"malformed payload: {e}"
                )
                return CallbackReceiveResult(success=True, callback_log_id=log.id, rejected=True)

            log = self._store(
                checkout_request_id=parsed.checkout_request_id,
                merchant_request_id=parsed.merchant_request_id,
                result_code=parsed.result_code,
                result_desc=parsed.result_desc,
                mpesa_receipt_number=parsed.mpesa_receipt_number,
                amount=parsed.amount,
                phone_number=parsed.phone_number,
                raw_payload=raw,
                status=CallbackStatus.RECEIVED.value
            )
            logger.info(
                f"[{self.request_id}] M-Pesa callback {parsed.checkout_request_id} "
                f"ResultCode={parsed.result_code} stored as {log.id}"
            )
            return CallbackReceiveResult(success=True, callback_log_id=log.id)

        except Exception as e:
            self.db.rollback()
            logger.exception(f"[{self.request_id}] Error storing M-Pesa callback: {e}")
            return CallbackReceiveResult(success=False, error=str(e))
