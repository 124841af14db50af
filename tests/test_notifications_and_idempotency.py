"""
Tests for notification hand-off and the idempotency cache.
"""
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from ride_payments.core.idempotency import IdempotencyError, IdempotencyManager
from ride_payments.core.notifications import (
    FAILURE_MESSAGES,
    HttpNotificationDispatcher,
    dispatch_in_background,
    user_failure_message,
)

from conftest import MTN_PHONE


class TestUserFailureMessage:
    """Test suite for provider reason to user message mapping."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "reason,key",
        [
            ("NOT_ENOUGH_FUNDS", "insufficient_funds"),
            ("Payer has insufficient balance", "insufficient_funds"),
            ("PAYER_NOT_FOUND", "invalid_number"),
            ("EXPIRED", "timeout"),
            ("Transaction declined by user", "cancelled"),
            ("INTERNAL_PROCESSING_ERROR", "generic"),
            (None, "generic"),
        ],
    )
    def test_mapping(self, reason, key: str) -> None:
        """Test reasons map onto the localised messages."""
        assert user_failure_message(reason) == FAILURE_MESSAGES[key]


class TestDispatch:
    """Test suite for notification dispatch."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failures_never_propagate(self) -> None:
        """Test a failing dispatcher does not break the caller."""
        dispatcher = AsyncMock()
        dispatcher.send_notification.side_effect = RuntimeError("push service down")

        task = dispatch_in_background(dispatcher, "U1", "Paiement", "ok", {"type": "payin_completed"})
        await task

        assert task.exception() is None
        dispatcher.send_notification.assert_awaited_once_with(
            "U1", "Paiement", "ok", {"type": "payin_completed"}
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_nothing_sent_without_recipient(self) -> None:
        """Test missing dispatcher or user id skips the notification."""
        dispatcher = AsyncMock()

        assert dispatch_in_background(dispatcher, None, "t", "m", {}) is None
        assert dispatch_in_background(None, "U1", "t", "m", {}) is None
        dispatcher.send_notification.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_dispatcher_retries_transport_errors(self) -> None:
        """Test the HTTP dispatcher retries a dropped connection and posts JSON."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(json.loads(request.content))
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused")
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = HttpNotificationDispatcher("http://notify.local/send", http_client=client)

        await dispatcher.send_notification("D1", "Virement", "ok", {"type": "payout_completed"})
        await client.aclose()

        assert len(attempts) == 2
        assert attempts[-1] == {
            "userId": "D1",
            "title": "Virement",
            "message": "ok",
            "data": {"type": "payout_completed"},
        }


class TestIdempotencyManager:
    """Test suite for IdempotencyManager."""

    @pytest.mark.unit
    def test_generated_key_format(self) -> None:
        """Test generated keys carry booking and user."""
        key = IdempotencyManager.generate_key("B1", "U1")

        assert key.startswith("payment_B1_U1_")
        assert key.rsplit("_", 1)[1].isdigit()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_hit_short_circuits(self, test_settings, test_db) -> None:
        """Test a cached envelope is returned without touching the database."""
        cached = {"success": True, "paymentId": "p1", "status": "processing"}
        redis = AsyncMock()
        redis.get.return_value = json.dumps(cached)
        store = AsyncMock()
        manager = IdempotencyManager(store=store, redis_client=redis, settings=test_settings)

        result = await manager.check_idempotency("B1", "k1", test_db)

        assert result == cached
        redis.get.assert_awaited_once_with("idempotency:B1:k1")
        store.get_payment_by_idempotency_key.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_failure_degrades_to_database(self, test_settings, test_db) -> None:
        """Test Redis errors fall through to the database tier."""
        redis = AsyncMock()
        redis.get.side_effect = ConnectionError("redis unreachable")
        manager = IdempotencyManager(redis_client=redis, settings=test_settings)

        assert await manager.check_idempotency("B1", "k1", test_db) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_database_failure_raises(self, test_settings, test_db) -> None:
        """Test a failing database lookup surfaces as IdempotencyError."""
        store = AsyncMock()
        store.get_payment_by_idempotency_key.side_effect = RuntimeError("db down")
        manager = IdempotencyManager(store=store, settings=test_settings)

        with pytest.raises(IdempotencyError):
            await manager.check_idempotency("B1", "k1", test_db)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_database_hit_is_cached(self, orchestrator, test_settings, test_db) -> None:
        """Test a database hit is written back to Redis."""
        result = await orchestrator.initiate_payin(
            test_db,
            booking_id="B1",
            amount=5000,
            phone_number=MTN_PHONE,
            idempotency_key="payment_B1_U1",
        )
        redis = AsyncMock()
        redis.get.return_value = None
        manager = IdempotencyManager(
            store=orchestrator.store, redis_client=redis, settings=test_settings
        )

        response = await manager.check_idempotency("B1", "payment_B1_U1", test_db)

        assert response["paymentId"] == result.response["paymentId"]
        key, ttl, body = redis.setex.await_args.args
        assert key == "idempotency:B1:payment_B1_U1"
        assert ttl == test_settings.idempotency_cache_ttl
        assert json.loads(body)["paymentId"] == result.response["paymentId"]
