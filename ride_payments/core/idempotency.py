"""
Idempotency system for preventing duplicate payin submissions.

Two tiers:
1. Redis cache of the response envelope for fast replays (optional)
2. The (booking, idempotency key) unique constraint in the database
"""
import json
import time
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ride_payments.config import Settings, get_settings
from ride_payments.core.store import TransactionStore
from ride_payments.database.models import Payment
from ride_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class IdempotencyError(Exception):
    """Raised when idempotency validation fails."""

    pass


class IdempotencyManager:
    """
    Manages idempotency keys and cached payin responses.

    Redis is optional; every Redis failure degrades to the database tier.
    """

    def __init__(
        self,
        store: Optional[TransactionStore] = None,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize idempotency manager.

        Args:
            store: Transaction store for the database tier
            redis_client: Optional Redis client (created from settings if a URL is set)
            settings: Optional settings
        """
        self.settings = settings or get_settings()
        self.store = store or TransactionStore()
        self.redis_client = redis_client

    async def _get_redis(self) -> Optional[aioredis.Redis]:
        """Return the Redis client, creating it lazily when configured."""
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def generate_key(booking_id: str, user_id: str) -> str:
        """
        Generate an idempotency key when the caller supplies none.

        Format: payment_{booking_id}_{user_id}_{epoch_ms}
        """
        return f"payment_{booking_id}_{user_id}_{int(time.time() * 1000)}"

    @staticmethod
    def _cache_key(booking_id: str, idempotency_key: str) -> str:
        return f"idempotency:{booking_id}:{idempotency_key}"

    async def check_idempotency(
        self, booking_id: str, idempotency_key: str, db: AsyncSession
    ) -> Optional[Dict[str, Any]]:
        """
        Check if a payin with this key already exists.

        First checks Redis cache, then falls back to database.

        Args:
            booking_id: Booking reference
            idempotency_key: The idempotency key to check
            db: Database session

        Returns:
            Optional[Dict[str, Any]]: Cached response if exists, None otherwise
        """
        cache_key = self._cache_key(booking_id, idempotency_key)

        try:
            redis = await self._get_redis()
            if redis is not None:
                cached = await redis.get(cache_key)
                if cached:
                    metrics.record_idempotency_cache_hit("redis")
                    logger.info(
                        "idempotency_cache_hit",
                        idempotency_key=idempotency_key,
                        source="redis",
                    )
                    return json.loads(cached)
        except Exception as e:
            logger.warning("redis_cache_error", error=str(e), idempotency_key=idempotency_key)

        try:
            payment = await self.store.get_payment_by_idempotency_key(
                db, booking_id, idempotency_key
            )
        except Exception as e:
            logger.error(
                "database_idempotency_check_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )
            raise IdempotencyError(f"Failed to check idempotency: {str(e)}")

        if payment is None:
            metrics.record_idempotency_cache_hit("miss")
            logger.info("idempotency_cache_miss", idempotency_key=idempotency_key)
            return None

        metrics.record_idempotency_cache_hit("database")
        logger.info(
            "idempotency_cache_hit",
            idempotency_key=idempotency_key,
            source="database",
        )
        response = self.payment_response(payment)
        await self.store_response(booking_id, idempotency_key, response)
        return response

    @staticmethod
    def payment_response(payment: Payment) -> Dict[str, Any]:
        """Envelope body describing an existing payment."""
        return {
            "success": payment.status != "failed",
            "paymentId": str(payment.id),
            "transactionToken": payment.transaction_id,
            "status": payment.status,
            "provider": payment.provider,
            "message": payment.error_message,
        }

    async def store_response(
        self, booking_id: str, idempotency_key: str, response: Dict[str, Any]
    ) -> None:
        """
        Store payin response in cache for idempotency.

        Args:
            booking_id: Booking reference
            idempotency_key: The idempotency key
            response: Response body to cache
        """
        try:
            redis = await self._get_redis()
            if redis is None:
                return
            await redis.setex(
                self._cache_key(booking_id, idempotency_key),
                self.settings.idempotency_cache_ttl,
                json.dumps(response),
            )
        except Exception as e:
            logger.warning(
                "idempotency_cache_store_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )

    async def invalidate(self, booking_id: str, idempotency_key: str) -> None:
        """
        Invalidate cached response for an idempotency key.

        Args:
            booking_id: Booking reference
            idempotency_key: The idempotency key to invalidate
        """
        try:
            redis = await self._get_redis()
            if redis is not None:
                await redis.delete(self._cache_key(booking_id, idempotency_key))
        except Exception as e:
            logger.warning(
                "idempotency_cache_invalidate_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
