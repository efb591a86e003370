"""
Redis-based storage for the practice directory and local booking copies.

Mirrors the session storage layout: JSON values under key prefixes, a lazy
connection and a health check. In-memory stores stand in when Redis is not
configured or unreachable at startup.
"""

import json
import logging
from typing import Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .errors import StorageError
from .models import BookingRecord, BookingStatus, PracticeRecord

logger = logging.getLogger(__name__)


class RedisStore:
    """Shared Redis connection handling."""

    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None):
        """
        Initialize the store.

        Args:
            redis_url: Redis connection URL
            client: Pre-built client (tests)
        """
        self.redis_url = redis_url
        self._redis: Optional[redis.Redis] = client

    async def connect(self):
        """Connect to Redis."""
        if not self._redis:
            self._redis = redis.from_url(
                self.redis_url, decode_responses=True, encoding="utf-8"
            )

    async def disconnect(self):
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def health_check(self) -> bool:
        """
        Check Redis connectivity.

        Returns:
            True if Redis is responding, False otherwise
        """
        try:
            await self.connect()
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return False


class RedisPracticeStore(RedisStore):
    """Practice directory entries keyed by ODS code."""

    _key_prefix = "gp_practice:"
    _index_key = "gp_practice:index"

    async def get(self, ods_code: str) -> Optional[PracticeRecord]:
        await self.connect()
        try:
            json_data = await self._redis.get(f"{self._key_prefix}{ods_code}")
        except RedisError as e:
            raise StorageError(f"Practice lookup failed: {e}") from e

        if not json_data:
            return None
        return PracticeRecord.from_dict(json.loads(json_data))

    async def put(self, record: PracticeRecord) -> None:
        await self.connect()
        try:
            await self._redis.set(
                f"{self._key_prefix}{record.ods_code}", json.dumps(record.to_dict())
            )
            await self._redis.sadd(self._index_key, record.ods_code)
        except RedisError as e:
            raise StorageError(f"Practice write failed: {e}") from e

    async def list_all(self) -> List[PracticeRecord]:
        await self.connect()
        try:
            codes = sorted(await self._redis.smembers(self._index_key))
            records = []
            for code in codes:
                json_data = await self._redis.get(f"{self._key_prefix}{code}")
                if json_data:
                    records.append(PracticeRecord.from_dict(json.loads(json_data)))
            return records
        except RedisError as e:
            raise StorageError(f"Practice listing failed: {e}") from e


class RedisBookingStore(RedisStore):
    """Local booking copies, with a per-status index for sweeps."""

    _key_prefix = "booking:"
    _status_prefix = "booking:status:"

    async def insert(self, record: BookingRecord) -> None:
        await self.connect()
        key = f"{self._key_prefix}{record.booking_id}"
        try:
            created = await self._redis.set(
                key, json.dumps(record.to_dict()), nx=True
            )
            if not created:
                raise StorageError(f"Booking {record.booking_id} already exists")
            await self._redis.sadd(
                f"{self._status_prefix}{record.status.value}", record.booking_id
            )
        except RedisError as e:
            raise StorageError(f"Booking insert failed: {e}") from e

    async def get(self, booking_id: str) -> Optional[BookingRecord]:
        await self.connect()
        try:
            json_data = await self._redis.get(f"{self._key_prefix}{booking_id}")
        except RedisError as e:
            raise StorageError(f"Booking lookup failed: {e}") from e

        if not json_data:
            return None
        return BookingRecord.from_dict(json.loads(json_data))

    async def update(self, record: BookingRecord) -> None:
        await self.connect()
        key = f"{self._key_prefix}{record.booking_id}"
        try:
            previous = await self._redis.get(key)
            if previous is None:
                raise StorageError(f"Booking {record.booking_id} does not exist")

            old_status = json.loads(previous)["status"]
            pipe = self._redis.pipeline(transaction=True)
            pipe.set(key, json.dumps(record.to_dict()))
            if old_status != record.status.value:
                pipe.srem(f"{self._status_prefix}{old_status}", record.booking_id)
                pipe.sadd(
                    f"{self._status_prefix}{record.status.value}", record.booking_id
                )
            await pipe.execute()
        except RedisError as e:
            raise StorageError(f"Booking update failed: {e}") from e

    async def list_by_status(self, status: BookingStatus) -> List[BookingRecord]:
        await self.connect()
        try:
            booking_ids = await self._redis.smembers(
                f"{self._status_prefix}{status.value}"
            )
            records = []
            for booking_id in sorted(booking_ids):
                json_data = await self._redis.get(f"{self._key_prefix}{booking_id}")
                if json_data:
                    records.append(BookingRecord.from_dict(json.loads(json_data)))
            return records
        except RedisError as e:
            raise StorageError(f"Booking listing failed: {e}") from e


class InMemoryPracticeStore:
    """In-memory practice directory for development and tests."""

    def __init__(self, records: Optional[List[PracticeRecord]] = None):
        self._records: Dict[str, PracticeRecord] = {
            r.ods_code: r for r in (records or [])
        }

    async def get(self, ods_code: str) -> Optional[PracticeRecord]:
        return self._records.get(ods_code)

    async def put(self, record: PracticeRecord) -> None:
        self._records[record.ods_code] = record

    async def list_all(self) -> List[PracticeRecord]:
        return [self._records[code] for code in sorted(self._records)]

    async def health_check(self) -> bool:
        return True

    async def disconnect(self):
        pass


class InMemoryBookingStore:
    """In-memory booking storage (development fallback)."""

    def __init__(self):
        self._records: Dict[str, dict] = {}

    async def insert(self, record: BookingRecord) -> None:
        if record.booking_id in self._records:
            raise StorageError(f"Booking {record.booking_id} already exists")
        self._records[record.booking_id] = record.to_dict()

    async def get(self, booking_id: str) -> Optional[BookingRecord]:
        data = self._records.get(booking_id)
        return BookingRecord.from_dict(data) if data else None

    async def update(self, record: BookingRecord) -> None:
        if record.booking_id not in self._records:
            raise StorageError(f"Booking {record.booking_id} does not exist")
        self._records[record.booking_id] = record.to_dict()

    async def list_by_status(self, status: BookingStatus) -> List[BookingRecord]:
        return [
            BookingRecord.from_dict(data)
            for _, data in sorted(self._records.items())
            if data["status"] == status.value
        ]

    async def health_check(self) -> bool:
        return True

    async def disconnect(self):
        pass
