"""Airtel Money adapter (collections API, USSD push)."""
import re
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

AIRTEL_STATUS_MAP = {
    "TS": CanonicalStatus.SUCCESS,
    "SUCCESS": CanonicalStatus.SUCCESS,
    "COMPLETED": CanonicalStatus.SUCCESS,
    "TF": CanonicalStatus.FAILED,
    "FAILED": CanonicalStatus.FAILED,
    "REJECTED": CanonicalStatus.FAILED,
    "TA": CanonicalStatus.PENDING,  # ambiguous
    "TIP": CanonicalStatus.PENDING,  # in progress
}

COUNTRY_CALLING_CODES = {"KE": "254", "UG": "256", "TZ": "255", "RW": "250", "ZM": "260"}


class AirtelAdapter(PaymentAdapter):
    """Mobile-money payments through an Airtel Money USSD push."""

    tag = "airtel"
    signature_headers = ("x-airtel-signature", "x-paybridge-signature")

    @staticmethod
    def map_status(code: Any) -> CanonicalStatus:
        if code is None:
            return CanonicalStatus.PENDING
        return AIRTEL_STATUS_MAP.get(str(code).strip().upper(), CanonicalStatus.PENDING)

    @property
    def country(self) -> str:
        return self.config.extra.get("country", "KE")

    def _subscriber_msisdn(self, phone_number: str) -> str:
        """Airtel expects the subscriber number without the country calling code."""
        digits = re.sub(r"[\s+-]", "", phone_number)
        if not digits.isdigit():
            raise ValidationError(f"Invalid Airtel phone number: {phone_number}")
        calling_code = COUNTRY_CALLING_CODES.get(self.country, "")
        if calling_code and digits.startswith(calling_code):
            digits = digits[len(calling_code):]
        digits = digits.lstrip("0")
        if len(digits) != 9:
            raise ValidationError(f"Invalid Airtel phone number: {phone_number}")
        return digits

    def validate(self, request: InitiateRequest) -> None:
        if request.phone_number:
            self._subscriber_msisdn(request.phone_number)

    async def _access_token(self) -> str:
        if not self.config.has_keys:
            raise UpstreamProviderError("Airtel credentials not configured")

        response = await self.http.post(
            "/auth/oauth2/token",
            json={
                "client_id": self.config.api_key,
                "client_secret": self.config.api_secret,
                "grant_type": "client_credentials",
            },
        )
        self._raise_for_status(response, "Airtel token request")
        token = self._json(response, "Airtel token request").get("access_token")
        if not token:
            raise UpstreamProviderError("Airtel token response did not include a token")
        return token

    def _headers(self, token: str, currency: str) -> dict:
        return {
            "Authorization": f"Bearer {token}",
            "X-Country": self.country,
            "X-Currency": currency,
            "Accept": "*/*",
        }

    async def _submit(self, transaction_id: str, request: InitiateRequest) -> SubmitResult:
        if not request.phone_number:
            raise UpstreamProviderError("No phone number supplied; collection request not sent")
        token = await self._access_token()

        response = await self.http.post(
            "/merchant/v1/payments/",
            json={
                "reference": request.description or request.order_id or transaction_id,
                "subscriber": {
                    "country": self.country,
                    "currency": request.currency,
                    "msisdn": self._subscriber_msisdn(request.phone_number),
                },
                "transaction": {
                    "amount": float(request.amount),
                    "country": self.country,
                    "currency": request.currency,
                    "id": transaction_id,
                },
            },
            headers=self._headers(token, request.currency),
        )
        self._raise_for_status(response, "Airtel collection request")

        data = self._json(response, "Airtel collection request")
        if dig(data, "status", "success") is False:
            raise UpstreamProviderError(
                f"Airtel collection rejected: {dig(data, 'status', 'message')}"
            )

        return SubmitResult(
            reference_id=as_str(dig(data, "data", "transaction", "id")),
            metadata={
                "airtel_status": dig(data, "data", "transaction", "status"),
                "response_code": dig(data, "status", "response_code"),
            },
        )

    def parse_callback(self, body: Any) -> VerificationResult:
        body = body if isinstance(body, dict) else {}
        transaction = body.get("transaction") if isinstance(body.get("transaction"), dict) else {}
        status_code = first_present(body.get("status"), transaction.get("status_code"))
        return VerificationResult(
            status=self.map_status(status_code),
            reference_id=as_str(
                first_present(
                    body.get("reference_id"),
                    transaction.get("airtel_money_id"),
                    transaction.get("id"),
                )
            ),
            transaction_id=as_str(first_present(body.get("transaction_id"), transaction.get("id"))),
            provider_status=as_str(status_code),
        )

    async def _query(
        self, transaction_id: str, reference_id: Optional[str], currency: Optional[str]
    ) -> Optional[VerificationResult]:
        token = await self._access_token()
        response = await self.http.get(
            f"/standard/v1/payments/{transaction_id}",
            headers=self._headers(token, currency or ""),
        )
        self._raise_for_status(response, "Airtel transaction enquiry")
        data = self._json(response, "Airtel transaction enquiry")
        status_code = dig(data, "data", "transaction", "status")
        return VerificationResult(
            status=self.map_status(status_code),
            reference_id=as_str(dig(data, "data", "transaction", "airtel_money_id")) or reference_id,
            transaction_id=transaction_id,
            provider_status=as_str(status_code),
        )
