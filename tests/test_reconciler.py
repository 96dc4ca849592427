"""
Tests for order reconciliation.
"""
import pytest

from paybridge.core.exceptions import OrderReconciliationError
from paybridge.core.reconciler import ORDER_PAYMENT_COMPLETED, ORDER_STATUS_CONFIRMED
from paybridge.providers.base import CanonicalStatus


async def _successful(ledger, make_result, order_id="order_1"):
    await ledger.insert(make_result(), user_id="user_1", order_id=order_id)
    await ledger.update_status("txn_test_1", CanonicalStatus.SUCCESS)
    return await ledger.get("txn_test_1")


class TestOrderReconciler:
    """Test suite for OrderReconciler."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_marks_order_confirmed_and_paid(
        self, ledger, reconciler, make_result, create_order, get_order
    ) -> None:
        await create_order("order_1")
        transaction = await _successful(ledger, make_result)

        assert await reconciler.reconcile(transaction) is True

        order = await get_order("order_1")
        assert order.status == ORDER_STATUS_CONFIRMED
        assert order.payment_status == ORDER_PAYMENT_COMPLETED
        assert (await ledger.get("txn_test_1")).order_reconciled_at is not None
        events = [e.event_type for e in await ledger.list_events("txn_test_1")]
        assert events.count("order_reconciled") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_runs_at_most_once(
        self, ledger, reconciler, make_result, create_order
    ) -> None:
        await create_order("order_1")
        transaction = await _successful(ledger, make_result)

        assert await reconciler.reconcile(transaction) is True
        assert await reconciler.reconcile(transaction) is False

        events = [e.event_type for e in await ledger.list_events("txn_test_1")]
        assert events.count("order_reconciled") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_skips_failed_transaction(
        self, ledger, reconciler, make_result, create_order, get_order
    ) -> None:
        await create_order("order_1")
        await ledger.insert(make_result(), order_id="order_1")
        await ledger.update_status("txn_test_1", CanonicalStatus.FAILED)

        assert await reconciler.reconcile(await ledger.get("txn_test_1")) is False
        assert (await get_order("order_1")).status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_skips_transaction_without_order(self, ledger, reconciler, make_result) -> None:
        await ledger.insert(make_result())
        await ledger.update_status("txn_test_1", CanonicalStatus.SUCCESS)

        assert await reconciler.reconcile(await ledger.get("txn_test_1")) is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_order_raises_and_leaves_claim_open(
        self, ledger, reconciler, make_result
    ) -> None:
        transaction = await _successful(ledger, make_result, order_id="order_missing")

        with pytest.raises(OrderReconciliationError):
            await reconciler.reconcile(transaction)

        stored = await ledger.get("txn_test_1")
        assert stored.status == "success"
        assert stored.order_reconciled_at is None
        assert [t.id for t in await ledger.list_unreconciled_orders()] == ["txn_test_1"]
