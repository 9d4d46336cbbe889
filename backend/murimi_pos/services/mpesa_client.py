# Overview: HTTP client for the Safaricom Daraja (M-Pesa) API.

"""
M-Pesa Daraja Client

WHY: Keeps every detail of the gateway's wire format in one place. Services
call initiate_stk_push() and get back the gateway's JSON answer; anything that
goes wrong on the network or at the gateway surfaces as MpesaError so routes
can answer 503.

Tests inject an httpx.MockTransport instead of talking to Safaricom.
"""

from __future__ import annotations

import base64
import logging
import re
from datetime import datetime, timezone

import httpx
from flask import current_app

from murimi_pos.errors import MpesaError, ValidationError
from murimi_pos.time_utils import to_east_africa

logger = logging.getLogger(__name__)


TRANSACTION_TYPE = "CustomerPayBillOnline"
TRANSACTION_DESC = "Murimi POS Payment"
CALLBACK_PATH = "/api/mpesa/callback"


# =============================================================================
# HELPERS
# =============================================================================

def generate_timestamp(now: datetime | None = None) -> str:
    """YYYYMMDDHHMMSS in East Africa Time."""
    now = now or datetime.now(timezone.utc)
    return to_east_africa(now).strftime("%Y%m%d%H%M%S")


def generate_password(short_code: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{short_code}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


def format_phone_number(phone: str) -> str:
    """
    Normalize a Kenyan phone number to 2547XXXXXXXX.

    Raises:
        ValidationError: not a recognizable Kenyan number
    """
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("254"):
        return digits
    if digits.startswith("0"):
        return "254" + digits[1:]
    if len(digits) == 9:
        return "254" + digits
    raise ValidationError("Invalid phone number format")


def is_valid_mpesa_phone(phone: str) -> bool:
    try:
        formatted = format_phone_number(phone)
    except ValidationError:
        return False
    return formatted.startswith("254") and len(formatted) == 12


# =============================================================================
# CLIENT
# =============================================================================

class MpesaClient:
    """Thin wrapper over the two Daraja calls the POS needs."""

    def __init__(
        self,
        *,
        consumer_key: str,
        consumer_secret: str,
        short_code: str,
        passkey: str,
        auth_token_url: str,
        stk_push_url: str,
        callback_base_url: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.short_code = short_code
        self.passkey = passkey
        self.auth_token_url = auth_token_url
        self.stk_push_url = stk_push_url
        self.callback_url = callback_base_url.rstrip("/") + CALLBACK_PATH
        self._http = httpx.Client(timeout=timeout, transport=transport)

    @classmethod
    def from_config(cls, config, transport: httpx.BaseTransport | None = None) -> "MpesaClient":
        return cls(
            consumer_key=config.get("MPESA_CONSUMER_KEY", ""),
            consumer_secret=config.get("MPESA_CONSUMER_SECRET", ""),
            short_code=config.get("MPESA_BUSINESS_SHORT_CODE", ""),
            passkey=config.get("MPESA_PASSKEY", ""),
            auth_token_url=config["MPESA_AUTH_TOKEN_URL"],
            stk_push_url=config["MPESA_STK_PUSH_URL"],
            callback_base_url=config.get("MPESA_CALLBACK_BASE_URL", ""),
            timeout=config.get("MPESA_TIMEOUT_SECONDS", 30.0),
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def get_access_token(self) -> str:
        credentials = base64.b64encode(
            f"{self.consumer_key}:{self.consumer_secret}".encode("utf-8")
        ).decode("ascii")
        try:
            response = self._http.get(
                self.auth_token_url,
                headers={"Authorization": f"Basic {credentials}", "Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("M-Pesa token request failed: %s", exc)
            raise MpesaError("M-Pesa service unavailable") from exc

        if response.status_code >= 400:
            raise MpesaError(f"Failed to get access token: {response.reason_phrase}")
        try:
            token = response.json().get("access_token")
        except ValueError as exc:
            raise MpesaError("Invalid access token response") from exc
        if not token:
            raise MpesaError("Invalid access token response")
        return token

    def initiate_stk_push(self, amount_cents: int, phone_number: str, account_reference: str) -> dict:
        """
        Ask the gateway to prompt the customer's phone for payment.

        Args:
            amount_cents: Amount to collect; Daraja takes whole shillings
            phone_number: Already formatted 2547XXXXXXXX
            account_reference: Shown to the customer on the prompt

        Returns:
            The gateway's JSON answer (ResponseCode "0" means the push was sent)

        Raises:
            MpesaError: network failure, non-2xx answer or unreadable body
        """
        access_token = self.get_access_token()
        timestamp = generate_timestamp()
        payload = {
            "BusinessShortCode": self.short_code,
            "Password": generate_password(self.short_code, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": TRANSACTION_TYPE,
            "Amount": amount_cents // 100,
            "PartyA": phone_number,
            "PartyB": self.short_code,
            "PhoneNumber": phone_number,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": TRANSACTION_DESC,
        }
        try:
            response = self._http.post(
                self.stk_push_url,
                json=payload,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("M-Pesa STK push request failed: %s", exc)
            raise MpesaError("STK push service unavailable") from exc

        if response.status_code >= 400:
            raise MpesaError(f"STK push failed: {response.reason_phrase}")
        try:
            return response.json()
        except ValueError as exc:
            raise MpesaError("Invalid STK push response") from exc


def get_mpesa_client() -> MpesaClient:
    """The app's client, created on first use. Tests pre-seed app.extensions["mpesa_client"]."""
    client = current_app.extensions.get("mpesa_client")
    if client is None:
        client = MpesaClient.from_config(current_app.config)
        current_app.extensions["mpesa_client"] = client
    return client
