import base64
import logging
import os
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Protocol

import httpx

from .errors import AuthError, GatewayError

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"

# refresh a little before the provider says the token expires
TOKEN_EXPIRY_MARGIN = 60


class ProviderGateway(Protocol):
    async def authenticate(self) -> str:
        ...

    async def initiate_push(
        self,
        *,
        shortcode: str,
        amount: Decimal,
        phone: str,
        callback_url: str,
        account_ref: str,
        description: str,
        token: str,
    ) -> dict:
        ...


def stk_timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """base64(ShortCode + PassKey + Timestamp), as Daraja expects."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode("utf-8")


def _decode(r: httpx.Response) -> Any:
    try:
        return r.json()
    except ValueError:
        return r.text


class MpesaGateway:
    """
    Daraja (M-Pesa) client: OAuth token fetch and STK push.
    Never retries; the caller decides what a failure means.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        consumer_key: str,
        consumer_secret: str,
        passkey: str,
        base_url: str = SANDBOX_BASE_URL,
    ):
        self._client = client
        self._consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self._passkey = passkey
        self._base_url = base_url.rstrip("/")
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_env(cls, client: httpx.AsyncClient) -> "MpesaGateway":
        return cls(
            client,
            consumer_key=os.getenv("MPESA_CONSUMER_KEY", ""),
            consumer_secret=os.getenv("MPESA_CONSUMER_SECRET", ""),
            passkey=os.getenv("MPESA_PASSKEY", ""),
            base_url=os.getenv("MPESA_BASE_URL", SANDBOX_BASE_URL),
        )

    async def authenticate(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        try:
            r = await self._client.get(
                f"{self._base_url}{TOKEN_PATH}",
                auth=(self._consumer_key, self._consumer_secret),
            )
        except httpx.TimeoutException:
            raise AuthError("M-Pesa auth timeout")
        except httpx.RequestError as e:
            raise AuthError(f"M-Pesa auth unavailable: {e!r}")

        body = _decode(r)
        if r.status_code != 200 or not isinstance(body, dict) or not body.get("access_token"):
            logger.error("M-Pesa token request failed status=%s body=%s", r.status_code, body)
            raise AuthError("Failed to generate M-Pesa access token", response=body)

        try:
            expires_in = int(body.get("expires_in", 3599))
        except (TypeError, ValueError):
            expires_in = 3599

        self._token = body["access_token"]
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
        return self._token

    async def initiate_push(
        self,
        *,
        shortcode: str,
        amount: Decimal,
        phone: str,
        callback_url: str,
        account_ref: str,
        description: str,
        token: str,
    ) -> dict:
        timestamp = stk_timestamp()
        payload = {
            "BusinessShortCode": shortcode,
            "Password": stk_password(shortcode, self._passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),  # whole shillings only
            "PartyA": phone,
            "PartyB": shortcode,
            "PhoneNumber": phone,
            "CallBackURL": callback_url,
            "AccountReference": account_ref,
            "TransactionDesc": description,
        }

        try:
            r = await self._client.post(
                f"{self._base_url}{STK_PUSH_PATH}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException:
            raise GatewayError("M-Pesa STK push timeout")
        except httpx.RequestError as e:
            raise GatewayError(f"M-Pesa STK push unavailable: {e!r}")

        body = _decode(r)
        if r.status_code != 200 or not isinstance(body, dict):
            raise GatewayError("M-Pesa rejected STK push", response=body)
        if str(body.get("ResponseCode", "0")) != "0":
            raise GatewayError(body.get("ResponseDescription") or "M-Pesa rejected STK push", response=body)

        return body
