# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Ledger record storage with compare-and-swap writes.

Every write names the version it expects to replace (``None`` for a new
record). A mismatch raises ``VersionConflictError`` and nothing is written.
"""

from __future__ import annotations

from typing import Dict, Optional, Protocol

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from .models import LedgerRecord


class LedgerStoreError(RuntimeError):
    """Store unreachable or returned unreadable data."""


class VersionConflictError(RuntimeError):
    """Record changed between read and write."""


class LedgerStore(Protocol):
    async def get(self, key: str) -> Optional[LedgerRecord]:
        ...

    async def put(self, record: LedgerRecord, *, expected_version: Optional[int]) -> LedgerRecord:
        ...


def _next_version(record: LedgerRecord, expected_version: Optional[int]) -> LedgerRecord:
    return record.replace(version=(expected_version or 0) + 1)


class MemoryLedgerStore:
    """Process-local store. Reads and writes never yield to the event loop."""

    def __init__(self) -> None:
        self._records: Dict[str, LedgerRecord] = {}

    async def get(self, key: str) -> Optional[LedgerRecord]:
        return self._records.get(key)

    async def put(self, record: LedgerRecord, *, expected_version: Optional[int]) -> LedgerRecord:
        current = self._records.get(record.fundingRef)
        current_version = current.version if current is not None else None
        if current_version != expected_version:
            raise VersionConflictError(
                f"{record.fundingRef}: expected version {expected_version}, found {current_version}"
            )
        stored = _next_version(record, expected_version)
        self._records[record.fundingRef] = stored
        return stored

    def __len__(self) -> int:
        return len(self._records)


class RedisLedgerStore:
    """Redis-backed store; CAS via WATCH/MULTI on the record key."""

    def __init__(self, client: "redis.Redis", *, prefix: str = "x402:ledger:"):
        self.redis = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisLedgerStore":
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @staticmethod
    def _load(raw: Optional[str]) -> Optional[LedgerRecord]:
        if raw is None:
            return None
        try:
            return LedgerRecord.model_validate_json(raw)
        except ValidationError as e:
            raise LedgerStoreError(f"unreadable ledger record: {e.error_count()} errors") from e

    async def get(self, key: str) -> Optional[LedgerRecord]:
        try:
            raw = await self.redis.get(self._key(key))
        except RedisError as e:
            raise LedgerStoreError(f"ledger read failed: {e}") from e
        return self._load(raw)

    async def put(self, record: LedgerRecord, *, expected_version: Optional[int]) -> LedgerRecord:
        k = self._key(record.fundingRef)
        stored = _next_version(record, expected_version)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(k)
                current = self._load(await pipe.get(k))
                current_version = current.version if current is not None else None
                if current_version != expected_version:
                    raise VersionConflictError(
                        f"{record.fundingRef}: expected version {expected_version}, found {current_version}"
                    )
                pipe.multi()
                pipe.set(k, stored.model_dump_json())
                await pipe.execute()
        except WatchError as e:
            raise VersionConflictError(f"{record.fundingRef}: concurrent write") from e
        except RedisError as e:
            raise LedgerStoreError(f"ledger write failed: {e}") from e
        return stored

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError:
            return False
