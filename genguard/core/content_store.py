"""
Content-addressed cache for generated payloads.

Each entry is tagged with the schema version it was produced under and the
hash of the inputs it was produced from. A read only trusts an entry when
both still hold:

    stored.schema_version >= current_schema_version
    stored.input_hash == current_input_hash

Anything else is a miss, however recent the entry. The store never
recomputes; callers decide whether a miss means regenerate.
"""

from typing import Any

import structlog
from pydantic import ValidationError

from genguard.core.config import Settings, get_settings
from genguard.core.errors import BackingStoreUnavailable
from genguard.core.metrics import get_metrics
from genguard.core.models import ContentEntry

logger = structlog.get_logger()

_BUCKETS = ("daily", "weekly", "monthly", "yearly")


class ContentStore:
    """Validated read / upsert write of ContentEntry records."""

    def __init__(self, store, settings: Settings | None = None):
        self.store = store
        self.settings = settings or get_settings()

    def ttl_for_key(self, key: str) -> int:
        """
        TTL from the period bucket of a content key.

        Only the bucket position of kind:vN:identity:bucket:period:variant is
        looked at, so an identity or kind that happens to read "weekly" does
        not pick the TTL. Any other key shape gets the default.
        """
        parts = key.split(":")
        if len(parts) == 6 and parts[3] in _BUCKETS:
            return self.settings.content_ttl_for(parts[3])
        return self.settings.content_ttl_default

    async def read_entry(self, key: str) -> ContentEntry | None:
        """Raw entry without validation. Unreadable or corrupt entries are None."""
        try:
            raw = await self.store.get(key)
        except BackingStoreUnavailable as e:
            logger.warning("content_read_unavailable", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return ContentEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("content_entry_corrupt", key=key)
            return None

    async def read(self, key: str, current_schema_version: int, current_input_hash: str) -> Any | None:
        """Stored payload if still valid for these inputs, else None (recompute)."""
        entry = await self.read_entry(key)
        metrics = get_metrics()

        if entry is None:
            metrics.increment("genguard_content_reads_total", {"result": "miss"})
            return None

        if entry.schema_version < current_schema_version:
            logger.info(
                "content_schema_outdated",
                key=key,
                stored=entry.schema_version,
                current=current_schema_version,
            )
            metrics.increment("genguard_content_reads_total", {"result": "stale_schema"})
            return None

        if entry.input_hash != current_input_hash:
            logger.info("content_input_changed", key=key)
            metrics.increment("genguard_content_reads_total", {"result": "stale_input"})
            return None

        metrics.increment("genguard_content_reads_total", {"result": "hit"})
        return entry.payload

    async def write(
        self,
        key: str,
        payload: Any,
        schema_version: int,
        input_hash: str,
        ttl_seconds: int | None = None,
    ) -> ContentEntry:
        """
        Upsert the entry for `key`, replacing whatever was there.

        Raises BackingStoreUnavailable if the store rejects the write.
        """
        entry = ContentEntry(
            key=key,
            payload=payload,
            schema_version=schema_version,
            input_hash=input_hash,
        )
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_for_key(key)
        await self.store.set(key, entry.model_dump_json(), ttl)
        logger.debug("content_written", key=key, schema_version=schema_version, ttl=ttl)
        return entry
