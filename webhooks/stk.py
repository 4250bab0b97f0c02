"""
Daraja (M-Pesa) STK push client.

Initiates a payment prompt on the payer's phone. The returned
CheckoutRequestID is what the payment-confirmation webhook later carries, so
callers store it as the pending transaction's reference.
"""
import base64
import re
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import httpx
import structlog

from core.config import Settings, get_settings
from core.errors import PaymentsError
from core.models import Clock, now_utc

from .models import StkPushResponse

logger = structlog.get_logger(__name__)

TOKEN_LIFETIME = timedelta(hours=1)
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


class PaymentInitiationError(PaymentsError):
    pass


def normalize_phone_number(phone_number: str) -> str:
    digits = re.sub(r"\D", "", phone_number)
    if digits.startswith("0"):
        return "254" + digits[1:]
    if not digits.startswith("254"):
        return "254" + digits
    return digits


class DarajaStkClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.Client] = None,
        clock: Clock = now_utc,
    ):
        self.settings = settings or get_settings()
        self.http_client = http_client or httpx.Client(
            base_url=self.settings.daraja_base_url,
            timeout=self.settings.daraja_timeout_seconds,
        )
        self.clock = clock
        self._access_token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None

    def get_access_token(self) -> str:
        now = self.clock()
        if self._access_token and self._token_expiry and self._token_expiry > now + TOKEN_REFRESH_MARGIN:
            return self._access_token

        try:
            response = self.http_client.get(
                "/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.settings.daraja_consumer_key, self.settings.daraja_consumer_secret),
            )
            response.raise_for_status()
            self._access_token = response.json()["access_token"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error("daraja_token_request_failed", error=str(e))
            raise PaymentInitiationError(f"Failed to get access token: {e}") from e

        self._token_expiry = now + TOKEN_LIFETIME
        return self._access_token

    def generate_timestamp(self) -> str:
        return self.clock().strftime("%Y%m%d%H%M%S")

    def generate_password(self, timestamp: str) -> str:
        raw = f"{self.settings.daraja_short_code}{self.settings.daraja_pass_key}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    def initiate_stk_push(
        self,
        phone_number: str,
        amount: Decimal,
        account_reference: str,
        transaction_desc: str,
    ) -> StkPushResponse:
        access_token = self.get_access_token()
        timestamp = self.generate_timestamp()
        msisdn = normalize_phone_number(phone_number)

        payload = {
            "BusinessShortCode": self.settings.daraja_short_code,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": msisdn,
            "PartyB": self.settings.daraja_short_code,
            "PhoneNumber": msisdn,
            "CallBackURL": self.settings.daraja_callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc,
        }

        try:
            response = self.http_client.post(
                "/mpesa/stkpush/v1/processrequest",
                json=payload,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            response.raise_for_status()
            result = StkPushResponse.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            detail = _error_message(e.response) or str(e)
            logger.error("daraja_stk_push_rejected", status_code=e.response.status_code, error=detail)
            raise PaymentInitiationError(f"Failed to initiate STK push: {detail}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("daraja_stk_push_failed", error=str(e))
            raise PaymentInitiationError(f"Failed to initiate STK push: {e}") from e

        logger.info(
            "daraja_stk_push_initiated",
            checkout_request_id=result.checkout_request_id,
            merchant_request_id=result.merchant_request_id,
            account_reference=account_reference,
        )
        return result

    def initiate_signup_payment(self, phone_number: str, email: str, amount: Decimal) -> StkPushResponse:
        return self.initiate_stk_push(
            phone_number=phone_number,
            amount=amount,
            account_reference="SIGNUP",
            transaction_desc=f"Account signup fee for {email}",
        )

    def close(self) -> None:
        self.http_client.close()


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("errorMessage") if isinstance(body, dict) else None
