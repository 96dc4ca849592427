"""M-Pesa (Safaricom Daraja) adapter using STK push."""
import base64
import re
from datetime import datetime
from typing import Any, Optional

import structlog

from paybridge.core.exceptions import UpstreamProviderError, ValidationError
from paybridge.providers.base import (
    CanonicalStatus,
    InitiateRequest,
    PaymentAdapter,
    SubmitResult,
    VerificationResult,
    as_str,
    dig,
    first_present,
)

logger = structlog.get_logger(__name__)

MPESA_SUCCESS_CODES = frozenset({"0"})

# Documented STK result codes that end the payment without a charge
MPESA_FAILURE_CODES = frozenset({
    "1",  # insufficient balance
    "1001",  # subscriber busy / transaction in progress
    "1019",  # transaction expired
    "1025",  # error sending push request
    "1032",  # cancelled by user
    "1037",  # phone unreachable
    "2001",  # wrong PIN
    "9999",  # error sending push request
})

PHONE_RE = re.compile(r"^(?:\+?254|0)?([17]\d{8})$")


def normalise_msisdn(phone_number: str) -> str:
    """Normalise a Kenyan mobile number to the 2547XXXXXXXX form."""
    digits = re.sub(r"[\s-]", "", phone_number)
    match = PHONE_RE.match(digits)
    if not match:
        raise ValidationError(f"Invalid M-Pesa phone number: {phone_number}")
    return f"254{match.group(1)}"


class MpesaAdapter(PaymentAdapter):
    """Mobile-money payments through an M-Pesa STK push prompt."""

    tag = "mpesa"
    signature_headers = ("x-mpesa-signature", "x-paybridge-signature")

    @staticmethod
    def map_status(code: Any) -> CanonicalStatus:
        if code is None or str(code).strip() == "":
            return CanonicalStatus.PENDING
        code = str(code).strip()
        if code in MPESA_SUCCESS_CODES:
            return CanonicalStatus.SUCCESS
        if code in MPESA_FAILURE_CODES:
            return CanonicalStatus.FAILED
        return CanonicalStatus.PENDING

    def validate(self, request: InitiateRequest) -> None:
        if request.phone_number:
            normalise_msisdn(request.phone_number)

    def _password(self, timestamp: str) -> str:
        shortcode = self.config.extra.get("shortcode", "")
        passkey = self.config.extra.get("passkey", "")
        return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()

    async def _access_token(self) -> str:
        if not self.config.has_keys:
            raise UpstreamProviderError("M-Pesa credentials not configured")

        response = await self.http.get(
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(self.config.api_key, self.config.api_secret),
        )
        self._raise_for_status(response, "M-Pesa token request")
        token = self._json(response, "M-Pesa token request").get("access_token")
        if not token:
            raise UpstreamProviderError("M-Pesa token response did not include a token")
        return token

    async def _submit(self, transaction_id: str, request: InitiateRequest) -> SubmitResult:
        if not request.phone_number:
            raise UpstreamProviderError("No phone number supplied; STK push not sent")
        token = await self._access_token()
        shortcode = self.config.extra.get("shortcode", "")
        msisdn = normalise_msisdn(request.phone_number)
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")

        payload = {
            "BusinessShortCode": shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(request.amount.to_integral_value()),
            "PartyA": msisdn,
            "PartyB": shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.config.callback_url,
            "AccountReference": (request.order_id or transaction_id)[:12],
            "TransactionDesc": (request.description or "Payment")[:13],
        }

        response = await self.http.post(
            "/mpesa/stkpush/v1/processrequest",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        self._raise_for_status(response, "M-Pesa STK push")

        data = self._json(response, "M-Pesa STK push")
        if str(data.get("ResponseCode")) != "0":
            raise UpstreamProviderError(
                f"M-Pesa STK push rejected: {data.get('ResponseDescription') or data.get('errorMessage')}"
            )

        return SubmitResult(
            reference_id=data.get("CheckoutRequestID"),
            metadata={
                "shortcode": shortcode,
                "merchant_request_id": data.get("MerchantRequestID"),
                "customer_message": data.get("CustomerMessage"),
            },
        )

    def parse_callback(self, body: Any) -> VerificationResult:
        callback = dig(body, "Body", "stkCallback")
        callback = callback if isinstance(callback, dict) else {}
        body = body if isinstance(body, dict) else {}
        result_code = first_present(
            callback.get("ResultCode"), body.get("result_code"), body.get("ResultCode")
        )
        return VerificationResult(
            status=self.map_status(result_code),
            reference_id=as_str(
                first_present(callback.get("CheckoutRequestID"), body.get("reference_id"))
            ),
            transaction_id=as_str(body.get("transaction_id")),
            provider_status=as_str(result_code),
        )

    async def _query(
        self, transaction_id: str, reference_id: Optional[str], currency: Optional[str]
    ) -> Optional[VerificationResult]:
        if not reference_id:
            return None
        token = await self._access_token()
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        response = await self.http.post(
            "/mpesa/stkpushquery/v1/query",
            json={
                "BusinessShortCode": self.config.extra.get("shortcode", ""),
                "Password": self._password(timestamp),
                "Timestamp": timestamp,
                "CheckoutRequestID": reference_id,
            },
            headers={"Authorization": f"Bearer {token}"},
        )
        self._raise_for_status(response, "M-Pesa STK query")
        data = self._json(response, "M-Pesa STK query")
        result_code = data.get("ResultCode")
        return VerificationResult(
            status=self.map_status(result_code),
            reference_id=reference_id,
            transaction_id=transaction_id,
            provider_status=as_str(result_code),
        )
