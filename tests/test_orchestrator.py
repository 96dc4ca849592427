"""
Tests for the payment orchestrator.

Covers initiation, webhook idempotency and order reconciliation, and status
polling. Providers run without API credentials, so initiation never leaves
the process.
"""
import asyncio
import json
from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from paybridge.core.exceptions import AuthenticationError, NotFoundError, ValidationError
from paybridge.database.models import Base
from paybridge.providers.base import CanonicalStatus, InitiateRequest, VerificationResult


def _request(method: str = "mpesa", order_id: str = None) -> InitiateRequest:
    return InitiateRequest(
        user_id="user_1",
        amount=Decimal("1000.00"),
        currency="KES",
        method=method,
        order_id=order_id,
    )


async def _event_types(ledger, transaction_id: str) -> list:
    return [e.event_type for e in await ledger.list_events(transaction_id)]


class TestInitiate:
    """Test suite for payment initiation."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_records_pending_transaction(self, orchestrator, ledger) -> None:
        result = await orchestrator.initiate(_request(order_id="order_1"), client_ip="10.0.0.1")

        assert result.status is CanonicalStatus.PENDING
        assert result.provider == "mpesa"
        stored = await ledger.get(result.transaction_id)
        assert stored.status == "pending"
        assert stored.order_id == "order_1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_card_bank_routes_to_configured_provider(self, orchestrator) -> None:
        result = await orchestrator.initiate(_request("card_bank"))
        assert result.provider == "pesapal"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_upstream_failure_still_records_pending(self, orchestrator, ledger) -> None:
        """Without credentials the upstream call fails; the payer still gets a transaction."""
        result = await orchestrator.initiate(_request("airtel"))

        assert result.metadata["upstream_error"] is True
        assert (await ledger.get(result.transaction_id)).status == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsupported_method_rejected(self, orchestrator) -> None:
        with pytest.raises(ValidationError, match="Unsupported payment method"):
            await orchestrator.initiate(_request("bitcoin"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_phone_rejected_before_provider_call(self, orchestrator, mocker) -> None:
        adapter = orchestrator.registry.get("mpesa")
        submit = mocker.spy(adapter, "initiate")

        request = InitiateRequest(
            user_id="user_1",
            amount=Decimal("10.00"),
            currency="KES",
            method="mpesa",
            phone_number="12345",
        )
        with pytest.raises(ValidationError):
            await orchestrator.initiate(request)
        submit.assert_not_called()


class TestHandleWebhook:
    """Test suite for webhook processing."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_success_applies_and_reconciles_order(
        self, orchestrator, ledger, create_order, get_order, webhook
    ) -> None:
        await create_order("order_1")
        txn = await orchestrator.initiate(_request(order_id="order_1"))
        body, headers = webhook("mpesa", {"transaction_id": txn.transaction_id, "result_code": 0})

        outcome = await orchestrator.handle_webhook("mpesa", body, headers)

        assert outcome.applied is True
        assert outcome.status == "success"
        assert outcome.outcome == "applied"
        order = await get_order("order_1")
        assert (order.status, order.payment_status) == ("confirmed", "completed")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_replays_are_idempotent(
        self, orchestrator, ledger, reconciler, create_order, webhook, mocker
    ) -> None:
        await create_order("order_1")
        txn = await orchestrator.initiate(_request(order_id="order_1"))
        body, headers = webhook("mpesa", {"transaction_id": txn.transaction_id, "result_code": 0})
        reconcile = mocker.spy(reconciler, "reconcile")

        outcomes = [await orchestrator.handle_webhook("mpesa", body, headers) for _ in range(5)]

        assert [o.applied for o in outcomes] == [True, False, False, False, False]
        assert {o.status for o in outcomes} == {"success"}
        assert [o.outcome for o in outcomes[1:]] == ["duplicate"] * 4
        assert reconcile.call_count == 1

        events = await _event_types(ledger, txn.transaction_id)
        assert events.count("status_changed") == 1
        assert events.count("order_reconciled") == 1
        assert events.count("duplicate_webhook") == 4

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_terminal_status_never_changes(self, orchestrator, ledger, webhook) -> None:
        txn = await orchestrator.initiate(_request())
        failed_body, failed_headers = webhook(
            "mpesa", {"transaction_id": txn.transaction_id, "result_code": 1032}
        )
        success_body, success_headers = webhook(
            "mpesa", {"transaction_id": txn.transaction_id, "result_code": 0}
        )

        first = await orchestrator.handle_webhook("mpesa", failed_body, failed_headers)
        second = await orchestrator.handle_webhook("mpesa", success_body, success_headers)

        assert first.status == "failed"
        assert second.applied is False
        assert second.status == "failed"
        assert (await ledger.get(txn.transaction_id)).status == "failed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_signature_mutates_nothing(self, orchestrator, ledger) -> None:
        txn = await orchestrator.initiate(_request())
        body = json.dumps({"transaction_id": txn.transaction_id, "result_code": 0}).encode()

        with pytest.raises(AuthenticationError):
            await orchestrator.handle_webhook("mpesa", body, {"X-Paybridge-Signature": "0" * 64})
        with pytest.raises(AuthenticationError):
            await orchestrator.handle_webhook("mpesa", body, {})

        assert (await ledger.get(txn.transaction_id)).status == "pending"
        assert await _event_types(ledger, txn.transaction_id) == ["initiated"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signature_checked_before_body_is_parsed(self, orchestrator) -> None:
        with pytest.raises(AuthenticationError):
            await orchestrator.handle_webhook("mpesa", b"not json", {"X-Paybridge-Signature": "bad"})

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signed_non_object_body_rejected(self, orchestrator) -> None:
        body = b"[1, 2, 3]"
        signature = orchestrator.registry.get("mpesa").verifier.sign(body)

        with pytest.raises(ValidationError):
            await orchestrator.handle_webhook("mpesa", body, {"X-Paybridge-Signature": signature})

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_transaction_not_found(self, orchestrator, webhook) -> None:
        body, headers = webhook("mpesa", {"transaction_id": "txn_unknown", "result_code": 0})
        with pytest.raises(NotFoundError):
            await orchestrator.handle_webhook("mpesa", body, headers)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_provider_mismatch_not_found(self, orchestrator, ledger, webhook) -> None:
        txn = await orchestrator.initiate(_request("airtel"))
        body, headers = webhook("mpesa", {"transaction_id": txn.transaction_id, "result_code": 0})

        with pytest.raises(NotFoundError):
            await orchestrator.handle_webhook("mpesa", body, headers)
        assert (await ledger.get(txn.transaction_id)).status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_provider_not_found(self, orchestrator, webhook) -> None:
        body, headers = webhook("mpesa", {"transaction_id": "txn_1", "result_code": 0})
        with pytest.raises(NotFoundError):
            await orchestrator.handle_webhook("paypal", body, headers)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_uncorrelated_body_is_validation_error(self, orchestrator, webhook) -> None:
        body, headers = webhook("mpesa", {"result_code": 0})
        with pytest.raises(ValidationError):
            await orchestrator.handle_webhook("mpesa", body, headers)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_correlates_by_provider_reference(self, orchestrator, ledger, webhook, make_result) -> None:
        await ledger.insert(make_result(transaction_id="txn_ref", reference_id="ws_CO_42"))
        body, headers = webhook(
            "mpesa",
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_42", "ResultCode": 0}}},
        )

        outcome = await orchestrator.handle_webhook("mpesa", body, headers)

        assert outcome.transaction_id == "txn_ref"
        assert outcome.status == "success"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bare_webhook_resolves_provider_from_transaction(self, orchestrator, webhook) -> None:
        txn = await orchestrator.initiate(_request())
        body, headers = webhook("mpesa", {"transaction_id": txn.transaction_id, "result_code": 0})

        outcome = await orchestrator.handle_webhook(None, body, headers)

        assert outcome.status == "success"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pending_report_is_acknowledged_without_change(self, orchestrator, ledger, webhook) -> None:
        txn = await orchestrator.initiate(_request("airtel"))
        body, headers = webhook("airtel", {"transaction_id": txn.transaction_id, "status": "TIP"})

        outcome = await orchestrator.handle_webhook("airtel", body, headers)

        assert outcome.applied is False
        assert outcome.outcome == "pending"
        assert outcome.status == "pending"
        assert "webhook_pending" in await _event_types(ledger, txn.transaction_id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconciliation_failure_still_acknowledged(self, orchestrator, ledger, webhook) -> None:
        txn = await orchestrator.initiate(_request(order_id="order_missing"))
        body, headers = webhook("mpesa", {"transaction_id": txn.transaction_id, "result_code": 0})

        outcome = await orchestrator.handle_webhook("mpesa", body, headers)

        assert outcome.applied is True
        assert outcome.status == "success"
        assert "order_reconciliation_failed" in await _event_types(ledger, txn.transaction_id)
        assert [t.id for t in await ledger.list_unreconciled_orders()] == [txn.transaction_id]


class TestConcurrentDelivery:
    """Test suite for simultaneous at-least-once webhook delivery."""

    @pytest_asyncio.fixture
    async def session_factory(self, tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
        """File-backed SQLite: each session gets its own connection and locks."""
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
            connect_args={"timeout": 30},
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

        await engine.dispose()

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_identical_webhooks_apply_once(
        self, orchestrator, ledger, reconciler, create_order, get_order, webhook, mocker
    ) -> None:
        await create_order("order_1")
        txn = await orchestrator.initiate(_request(order_id="order_1"))
        body, headers = webhook("mpesa", {"transaction_id": txn.transaction_id, "result_code": 0})
        reconcile = mocker.spy(reconciler, "reconcile")

        outcomes = await asyncio.gather(
            *[orchestrator.handle_webhook("mpesa", body, headers) for _ in range(10)]
        )

        assert sum(o.applied for o in outcomes) == 1
        assert {o.status for o in outcomes} == {"success"}
        assert sorted(o.outcome for o in outcomes) == ["applied"] + ["duplicate"] * 9
        assert reconcile.call_count == 1

        events = await _event_types(ledger, txn.transaction_id)
        assert events.count("status_changed") == 1
        assert events.count("order_reconciled") == 1
        assert events.count("duplicate_webhook") == 9
        order = await get_order("order_1")
        assert (order.status, order.payment_status) == ("confirmed", "completed")

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_conflicting_webhooks_settle_once(
        self, orchestrator, ledger, webhook
    ) -> None:
        txn = await orchestrator.initiate(_request())
        deliveries = [
            webhook("mpesa", {"transaction_id": txn.transaction_id, "result_code": code})
            for code in (0, 1032) * 5
        ]

        outcomes = await asyncio.gather(
            *[orchestrator.handle_webhook("mpesa", body, headers) for body, headers in deliveries]
        )

        final = (await ledger.get(txn.transaction_id)).status
        assert final in ("success", "failed")
        assert sum(o.applied for o in outcomes) == 1
        assert {o.status for o in outcomes} == {final}
        events = await _event_types(ledger, txn.transaction_id)
        assert events.count("status_changed") == 1


class TestStatus:
    """Test suite for status queries and provider polling."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_status(self, orchestrator) -> None:
        txn = await orchestrator.initiate(_request())
        stored = await orchestrator.get_status(txn.transaction_id)
        assert stored.status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_status_unknown(self, orchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.get_status("txn_unknown")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refresh_applies_terminal_answer(
        self, orchestrator, ledger, create_order, get_order, mocker
    ) -> None:
        await create_order("order_1")
        txn = await orchestrator.initiate(_request(order_id="order_1"))
        mocker.patch.object(
            orchestrator.registry.get("mpesa"),
            "query_status",
            AsyncMock(return_value=VerificationResult(status=CanonicalStatus.SUCCESS, provider_status="0")),
        )

        refreshed = await orchestrator.get_status(txn.transaction_id, refresh=True)

        assert refreshed.status == "success"
        assert (await get_order("order_1")).payment_status == "completed"
        events = await _event_types(ledger, txn.transaction_id)
        assert "status_polled" in events
        assert "status_changed" in events

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refresh_keeps_pending_when_provider_silent(self, orchestrator, mocker) -> None:
        txn = await orchestrator.initiate(_request())
        query = mocker.patch.object(
            orchestrator.registry.get("mpesa"), "query_status", AsyncMock(return_value=None)
        )

        refreshed = await orchestrator.get_status(txn.transaction_id, refresh=True)

        assert refreshed.status == "pending"
        query.assert_awaited_once()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refresh_skips_terminal_transactions(self, orchestrator, webhook, mocker) -> None:
        txn = await orchestrator.initiate(_request())
        body, headers = webhook("mpesa", {"transaction_id": txn.transaction_id, "result_code": 1})
        await orchestrator.handle_webhook("mpesa", body, headers)
        query = mocker.patch.object(orchestrator.registry.get("mpesa"), "query_status", AsyncMock())

        refreshed = await orchestrator.get_status(txn.transaction_id, refresh=True)

        assert refreshed.status == "failed"
        query.assert_not_called()
