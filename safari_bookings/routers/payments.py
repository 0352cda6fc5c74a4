"""
M-Pesa callback endpoint (FAST PATH)

Always answers 200 {"ResultCode": 0, "ResultDesc": "Accepted"}, whatever
happens, so M-Pesa stops redelivering. Failures are logged and left to
the callback log / worker replay.
"""

from fastapi import APIRouter, Depends, Request, Query
from sqlalchemy.orm import Session
from typing import Optional
import json
import logging

from ..database import get_db
from ..services.callback_receiver import MpesaCallbackReceiver, ACCEPTED_ACK
from ..services.reconciliation_service import CallbackProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["Payments"])


@router.post("/mpesa/callback")
async def mpesa_callback(
    request: Request,
    token: Optional[str] = Query(None),
    db: Session = Depends(get_db)
):
    request_id = getattr(request.state, "request_id", None) or "no-request-id"

    body = await request.body()
    try:
        payload = json.loads(body) if body else {}
    except ValueError:
        logger.warning(f"[{request_id}] M-Pesa callback body is not JSON")
        payload = {"raw": body.decode("utf-8", errors="replace")}

    result = MpesaCallbackReceiver(db, request_id).receive(payload, token=token)
    if not result.success:
        logger.error(f"[{request_id}] M-Pesa callback not stored: {result.error}")
        return ACCEPTED_ACK

    if not result.rejected:
        try:
            outcome = CallbackProcessor(db).process_callback(result.callback_log_id)
        except Exception as e:
            db.rollback()
            logger.exception(f"[{request_id}] Inline reconciliation crashed: {e}")
            outcome = None
        if outcome is None:
            logger.info(f"[{request_id}] Callback {result.callback_log_id} left for the worker")

    return ACCEPTED_ACK
