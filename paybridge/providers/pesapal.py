"""Pesapal v3 adapter (card and bank payments via hosted checkout)."""
from typing import Any, Optional

import structlog

from paybridge.core.exceptions import UpstreamProviderError
from paybridge.providers.base import (
    CanonicalStatus,
    InitiateRequest,
    PaymentAdapter,
    SubmitResult,
    VerificationResult,
    as_str,
    first_present,
)

logger = structlog.get_logger(__name__)

# Pesapal status codes: 0 = INVALID, 1 = COMPLETED, 2 = FAILED, 3 = REVERSED
PESAPAL_STATUS_MAP = {
    "1": CanonicalStatus.SUCCESS,
    "COMPLETED": CanonicalStatus.SUCCESS,
    "0": CanonicalStatus.FAILED,
    "INVALID": CanonicalStatus.FAILED,
    "2": CanonicalStatus.FAILED,
    "FAILED": CanonicalStatus.FAILED,
    "3": CanonicalStatus.FAILED,
    "REVERSED": CanonicalStatus.FAILED,
}


class PesapalAdapter(PaymentAdapter):
    """Hosted-checkout card/bank payments through Pesapal."""

    tag = "pesapal"
    signature_headers = ("x-pesapal-signature", "x-paybridge-signature")

    @staticmethod
    def map_status(code: Any) -> CanonicalStatus:
        if code is None:
            return CanonicalStatus.PENDING
        return PESAPAL_STATUS_MAP.get(str(code).strip().upper(), CanonicalStatus.PENDING)

    async def _access_token(self) -> str:
        if not self.config.has_keys:
            raise UpstreamProviderError("Pesapal credentials not configured")

        response = await self.http.post(
            "/api/Auth/RequestToken",
            json={
                "consumer_key": self.config.api_key,
                "consumer_secret": self.config.api_secret,
            },
            headers={"Accept": "application/json"},
        )
        self._raise_for_status(response, "Pesapal token request")
        token = self._json(response, "Pesapal token request").get("token")
        if not token:
            raise UpstreamProviderError("Pesapal token response did not include a token")
        return token

    async def _submit(self, transaction_id: str, request: InitiateRequest) -> SubmitResult:
        token = await self._access_token()

        order = {
            "id": transaction_id,
            "currency": request.currency,
            "amount": float(request.amount),
            "description": request.description
            or f"Payment for order {request.order_id or transaction_id}",
            "callback_url": self.config.callback_url,
            "notification_id": self.config.extra.get("ipn_id", ""),
            "billing_address": {
                "phone_number": request.phone_number or "",
                "country_code": "KE",
            },
        }

        response = await self.http.post(
            "/api/Transactions/SubmitOrderRequest",
            json=order,
            headers={"Accept": "application/json", "Authorization": f"Bearer {token}"},
        )
        self._raise_for_status(response, "Pesapal order submission")

        data = self._json(response, "Pesapal order submission")
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise UpstreamProviderError(f"Pesapal order submission failed: {message}")

        tracking_id = data.get("order_tracking_id")
        return SubmitResult(
            redirect_url=first_present(data.get("redirect_url"), data.get("redirectUrl")),
            reference_id=tracking_id,
            metadata={
                "order_tracking_id": tracking_id,
                "merchant_reference": data.get("merchant_reference"),
            },
        )

    def parse_callback(self, body: Any) -> VerificationResult:
        body = body if isinstance(body, dict) else {}
        status_code = first_present(
            body.get("status_code"), body.get("StatusCode"), body.get("status")
        )
        return VerificationResult(
            status=self.map_status(status_code),
            reference_id=as_str(
                first_present(
                    body.get("order_tracking_id"),
                    body.get("OrderTrackingId"),
                    body.get("reference_id"),
                )
            ),
            transaction_id=as_str(
                first_present(
                    body.get("order_merchant_reference"),
                    body.get("OrderMerchantReference"),
                    body.get("transaction_id"),
                    body.get("id"),
                )
            ),
            provider_status=as_str(status_code),
        )

    async def _query(
        self, transaction_id: str, reference_id: Optional[str], currency: Optional[str]
    ) -> Optional[VerificationResult]:
        if not reference_id:
            return None
        token = await self._access_token()
        response = await self.http.get(
            "/api/Transactions/GetTransactionStatus",
            params={"orderTrackingId": reference_id},
            headers={"Accept": "application/json", "Authorization": f"Bearer {token}"},
        )
        self._raise_for_status(response, "Pesapal status query")
        data = self._json(response, "Pesapal status query")
        status_code = first_present(data.get("status_code"), data.get("payment_status_description"))
        return VerificationResult(
            status=self.map_status(status_code),
            reference_id=reference_id,
            transaction_id=as_str(data.get("merchant_reference")) or transaction_id,
            provider_status=as_str(status_code),
        )
