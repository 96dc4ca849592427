"""DPO Pay adapter (hosted card checkout, XML API v6)."""
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Any, Dict, Optional

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

DPO_RESULT_CODES = {
    "000": CanonicalStatus.SUCCESS,  # transaction paid
    "900": CanonicalStatus.PENDING,  # not paid yet
    "901": CanonicalStatus.FAILED,  # declined
    "903": CanonicalStatus.FAILED,  # payment time expired
    "904": CanonicalStatus.FAILED,  # cancelled
}

# Only exact texts settle a payment; anything unrecognised stays pending.
DPO_SUCCESS_TEXT = frozenset({"paid", "approved", "success", "successful"})
DPO_FAILED_TEXT = frozenset({"declined", "error", "cancelled", "canceled", "expired"})
DPO_FAILED_MARKERS = ("fail", "unsuccess", "not success")


def _xml(root: str, fields: Dict[str, Any]) -> bytes:
    element = ET.Element(root)
    _fill(element, fields)
    return b'<?xml version="1.0" encoding="utf-8"?>' + ET.tostring(element)


def _fill(parent: ET.Element, fields: Dict[str, Any]) -> None:
    for name, value in fields.items():
        child = ET.SubElement(parent, name)
        if isinstance(value, dict):
            _fill(child, value)
        else:
            child.text = "" if value is None else str(value)


def _parse(content: bytes) -> Dict[str, str]:
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise UpstreamProviderError(f"DPO returned malformed XML: {e}")
    return {child.tag: (child.text or "").strip() for child in root}


class DpoAdapter(PaymentAdapter):
    """Card payments through a DPO hosted payment page."""

    tag = "dpo"
    signature_headers = ("x-dpo-signature", "x-paybridge-signature")

    @staticmethod
    def map_status(code: Any) -> CanonicalStatus:
        if code is None:
            return CanonicalStatus.PENDING
        value = str(code).strip().lower()
        if value in DPO_RESULT_CODES:
            return DPO_RESULT_CODES[value]
        if value in DPO_FAILED_TEXT or any(marker in value for marker in DPO_FAILED_MARKERS):
            return CanonicalStatus.FAILED
        if value in DPO_SUCCESS_TEXT:
            return CanonicalStatus.SUCCESS
        return CanonicalStatus.PENDING

    def _payment_page(self, token: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/payv2.php?ID={token}"

    async def _call(self, fields: Dict[str, Any], action: str) -> Dict[str, str]:
        if not self.config.api_key:
            raise UpstreamProviderError("DPO company token not configured")
        response = await self.http.post(
            "/API/v6/",
            content=_xml("API3G", {"CompanyToken": self.config.api_key, **fields}),
            headers={"Content-Type": "application/xml"},
        )
        self._raise_for_status(response, action)
        return _parse(response.content)

    async def _submit(self, transaction_id: str, request: InitiateRequest) -> SubmitResult:
        result = await self._call(
            {
                "Request": "createToken",
                "Transaction": {
                    "PaymentAmount": f"{request.amount:.2f}",
                    "PaymentCurrency": request.currency,
                    "CompanyRef": transaction_id,
                    "RedirectURL": self.config.callback_url,
                    "BackURL": self.config.callback_url,
                    "CompanyRefUnique": "1",
                    "PTL": "30",
                },
                "Services": {
                    "Service": {
                        "ServiceType": self.config.extra.get("service_type", ""),
                        "ServiceDescription": request.description
                        or f"Payment for order {request.order_id or transaction_id}",
                        "ServiceDate": datetime.now().strftime("%Y/%m/%d %H:%M"),
                    }
                },
            },
            "DPO createToken",
        )

        if result.get("Result") != "000" or not result.get("TransToken"):
            raise UpstreamProviderError(
                f"DPO createToken rejected: {result.get('Result')} {result.get('ResultExplanation')}"
            )

        token = result["TransToken"]
        return SubmitResult(
            redirect_url=self._payment_page(token),
            reference_id=token,
            metadata={
                "trans_ref": result.get("TransRef"),
                "service_type": self.config.extra.get("service_type", ""),
            },
        )

    def parse_callback(self, body: Any) -> VerificationResult:
        body = body if isinstance(body, dict) else {}
        status_code = first_present(
            body.get("status"), body.get("TransactionStatus"), body.get("Result")
        )
        return VerificationResult(
            status=self.map_status(status_code),
            reference_id=as_str(first_present(body.get("reference_id"), body.get("TransactionToken"))),
            transaction_id=as_str(
                first_present(
                    body.get("transaction_id"), body.get("CompanyRef"), body.get("TransactionID")
                )
            ),
            provider_status=as_str(status_code),
        )

    async def _query(
        self, transaction_id: str, reference_id: Optional[str], currency: Optional[str]
    ) -> Optional[VerificationResult]:
        if not reference_id:
            return None
        result = await self._call(
            {"Request": "verifyToken", "TransactionToken": reference_id},
            "DPO verifyToken",
        )
        code = result.get("Result")
        return VerificationResult(
            status=self.map_status(code),
            reference_id=reference_id,
            transaction_id=transaction_id,
            provider_status=code,
        )
