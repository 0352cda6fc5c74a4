"""
M-Pesa Daraja API Client

Wrapper for the Safaricom Daraja API that handles:
- OAuth client-credentials token (cached until shortly before expiry)
- STK push (Lipa na M-Pesa Online) initiation
- Phone number normalization to 2547XXXXXXXX / 2541XXXXXXXX
- Structured error mapping
- Exponential backoff on timeouts, 429 and 5xx

Daraja documentation: https://developer.safaricom.co.ke/
"""

import base64
import logging
import math
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from functools import lru_cache
from typing import Callable, Dict, Optional

import httpx

from ..config import settings
from ..exceptions import InvalidPhoneNumber, PaymentGatewayError
from ..utils.logging_config import mask_phone

logger = logging.getLogger(__name__)

# Daraja expects timestamps in East Africa Time (UTC+3, no DST)
EAT_OFFSET = timedelta(hours=3)

KENYAN_MSISDN = re.compile(r"^254[17]\d{8}$")


@dataclass
class StkPushResponse:
    checkout_request_id: str
    merchant_request_id: str
    response_code: str
    response_description: str
    customer_message: str = ""


@dataclass
class DarajaError:
    """Structured error from the Daraja API"""
    code: str
    message: str
    status_code: int
    retryable: bool = False


ERROR_MAP = {
    400: DarajaError("bad_request", "Daraja rejected the request", 400, False),
    401: DarajaError("unauthorized", "Invalid or expired Daraja credentials", 401, False),
    403: DarajaError("forbidden", "Access denied by Daraja", 403, False),
    404: DarajaError("not_found", "Daraja resource not found", 404, False),
    429: DarajaError("rate_limited", "Too many requests to Daraja", 429, True),
    500: DarajaError("server_error", "Daraja server error", 500, True),
    502: DarajaError("bad_gateway", "Daraja gateway error", 502, True),
    503: DarajaError("service_unavailable", "Daraja service unavailable", 503, True),
}


def normalize_phone(phone: str) -> str:
    """
    Normalize a Kenyan mobile number to the MSISDN format Daraja accepts.

    0712345678, +254712345678, 712345678 and 254712345678 all become
    254712345678.
    """
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("0") and len(digits) == 10:
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in "17":
        digits = "254" + digits
    if not KENYAN_MSISDN.match(digits):
        raise InvalidPhoneNumber(f"'{phone}' is not a valid Kenyan mobile number")
    return digits


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """STK push password: base64(shortcode + passkey + timestamp)"""
    raw = f"{shortcode}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("utf-8")


def daraja_timestamp(now: Optional[datetime] = None) -> str:
    now = now or (datetime.utcnow() + EAT_OFFSET)
    return now.strftime("%Y%m%d%H%M%S")


class DarajaClient:
    """
    Client for Daraja STK push operations.

    `transport` lets tests plug in an httpx.MockTransport; `sleep` lets
    them skip backoff delays.
    """

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        callback_url: str,
        base_url: str,
        timeout: float = 30,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        request_id: Optional[str] = None
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.sleep = sleep
        self.request_id = request_id or "no-request-id"

        # Retry configuration
        self.max_retries = 3
        self.base_delay = 1.0
        self.max_delay = 30.0

        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport
        )

    def _map_error(self, response: httpx.Response) -> PaymentGatewayError:
        mapped = ERROR_MAP.get(response.status_code)
        try:
            body = response.json()
        except ValueError:
            body = {}
        detail = body.get("errorMessage") or body.get("ResponseDescription")
        if mapped is None:
            mapped = DarajaError(
                "unknown_error",
                "Unexpected Daraja response",
                response.status_code,
                response.status_code >= 500
            )
        message = f"{mapped.message}: {detail}" if detail else mapped.message
        return PaymentGatewayError(message, retryable=mapped.retryable, gateway_code=mapped.code)

    def _request(self, method: str, path: str, idempotent: bool = True, **kwargs) -> httpx.Response:
        """
        Send a request, retrying transient failures with exponential backoff.

        Non-idempotent calls (the STK push) are only retried when the request
        cannot have reached Daraja: connection failures and 429. A read
        timeout or 5xx may already have sent a prompt to the guest, so it is
        raised instead of sending a second one.
        """
        last_error: Optional[PaymentGatewayError] = None

        with self._client() as client:
            for attempt in range(self.max_retries + 1):
                delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                try:
                    response = client.request(method, path, **kwargs)
                except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                    logger.warning(
                        f"[{self.request_id}] Daraja {method} {path} connection failed "
                        f"(attempt {attempt + 1}/{self.max_retries + 1}): {e}"
                    )
                    last_error = PaymentGatewayError(
                        f"Payment gateway unreachable: {e}", retryable=True, gateway_code="transport_error"
                    )
                    if attempt < self.max_retries:
                        self.sleep(delay)
                    continue
                except (httpx.TimeoutException, httpx.TransportError) as e:
                    logger.warning(
                        f"[{self.request_id}] Daraja {method} {path} transport error "
                        f"(attempt {attempt + 1}/{self.max_retries + 1}): {e}"
                    )
                    last_error = PaymentGatewayError(
                        f"Payment gateway unreachable: {e}", retryable=True, gateway_code="transport_error"
                    )
                    if not idempotent:
                        last_error.gateway_code = "outcome_unknown"
                        raise last_error
                    if attempt < self.max_retries:
                        self.sleep(delay)
                    continue

                if response.status_code < 400:
                    return response

                error = self._map_error(response)
                logger.warning(
                    f"[{self.request_id}] Daraja {method} {path} -> {response.status_code} "
                    f"(attempt {attempt + 1}/{self.max_retries + 1})"
                )
                if not error.retryable or (not idempotent and response.status_code != 429):
                    raise error
                last_error = error
                if attempt < self.max_retries:
                    self.sleep(delay)

        raise last_error

    def get_access_token(self) -> str:
        """OAuth client-credentials token, cached until a minute before expiry"""
        now = datetime.utcnow()
        if self._access_token and self._token_expires_at and now < self._token_expires_at:
            return self._access_token

        response = self._request(
            "GET",
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(self.consumer_key, self.consumer_secret)
        )
        data = response.json()
        token = data.get("access_token")
        if not token:
            raise PaymentGatewayError("Daraja did not return an access token", gateway_code="auth_error")

        expires_in = int(data.get("expires_in", 3599))
        self._access_token = token
        self._token_expires_at = now + timedelta(seconds=max(0, expires_in - 60))
        return token

    def stk_push(
        self,
        phone_number: str,
        amount: Decimal,
        account_reference: str,
        description: str
    ) -> StkPushResponse:
        """
        Send an STK push prompt to the guest's phone.

        Amount is rounded up to whole shillings. Raises PaymentGatewayError
        when Daraja refuses the request.
        """
        msisdn = normalize_phone(phone_number)
        timestamp = daraja_timestamp()
        payload: Dict = {
            "BusinessShortCode": self.shortcode,
            "Password": build_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(math.ceil(Decimal(amount))),
            "PartyA": msisdn,
            "PartyB": self.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference[:12],
            "TransactionDesc": description[:13],
        }

        response = self._request(
            "POST",
            "/mpesa/stkpush/v1/processrequest",
            idempotent=False,
            json=payload,
            headers={"Authorization": f"Bearer {self.get_access_token()}"}
        )
        data = response.json()

        if str(data.get("ResponseCode")) != "0" or not data.get("CheckoutRequestID"):
            raise PaymentGatewayError(
                f"STK push refused: {data.get('ResponseDescription') or data.get('errorMessage')}",
                gateway_code=str(data.get("ResponseCode") or data.get("errorCode") or "refused")
            )

        logger.info(
            f"[{self.request_id}] STK push sent to {mask_phone(msisdn)}, "
            f"CheckoutRequestID={data['CheckoutRequestID']}"
        )
        return StkPushResponse(
            checkout_request_id=data["CheckoutRequestID"],
            merchant_request_id=data.get("MerchantRequestID", ""),
            response_code=str(data.get("ResponseCode")),
            response_description=data.get("ResponseDescription", ""),
            customer_message=data.get("CustomerMessage", "")
        )


@lru_cache()
def get_payment_gateway() -> DarajaClient:
    """Shared Daraja client built from settings (FastAPI dependency)"""
    if not settings.has_mpesa_credentials:
        logger.warning("M-Pesa credentials are not configured, STK pushes will fail")

    callback_url = settings.mpesa_callback_url
    if settings.mpesa_callback_token:
        separator = "&" if "?" in callback_url else "?"
        callback_url = f"{callback_url}{separator}token={settings.mpesa_callback_token}"

    return DarajaClient(
        consumer_key=settings.mpesa_consumer_key,
        consumer_secret=settings.mpesa_consumer_secret,
        shortcode=settings.mpesa_shortcode,
        passkey=settings.mpesa_passkey,
        callback_url=callback_url,
        base_url=settings.mpesa_base_url,
        timeout=settings.mpesa_timeout_seconds
    )
