"""
cache_manager.py - Versioned document text cache shared across workers

Each entry holds the text of one document together with the document version
it was read at. Writes are compare-and-set on that version, so a worker that
read an older version can never overwrite a newer cached text, and deleted
documents leave a tombstone that blocks late writes until it expires.

With a Redis URL configured, Redis is the only cache tier: every worker sees
the same entries and an invalidation in one worker is visible to all. When
Redis is configured but unreachable the cache is bypassed and reads go to the
database. The in-process tier is used only when no Redis URL is configured,
which is safe for a single worker process only.

Entries are stored as JSON, never pickled.
"""
import json
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError, WatchError

from logger import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "docsearch"

# Version recorded for deleted documents; higher than any real version
TOMBSTONE_VERSION = sys.maxsize


@dataclass
class CachedText:
    version: int
    text: Optional[str]

    @property
    def deleted(self) -> bool:
        return self.version == TOMBSTONE_VERSION


def _encode(entry: CachedText) -> bytes:
    return json.dumps(
        {"version": entry.version, "text": entry.text}, ensure_ascii=False
    ).encode('utf-8')


def _decode(data) -> Optional[CachedText]:
    if data is None:
        return None
    if isinstance(data, bytes):
        data = data.decode('utf-8')
    try:
        value = json.loads(data)
        return CachedText(version=int(value["version"]), text=value["text"])
    except (ValueError, KeyError, TypeError) as e:
        logger.error(f"Corrupted text cache entry: {e}")
        return None


def create_redis_client(redis_url: str, max_connections: int = 50) -> Redis:
    """Pooled Redis client for the cache"""
    pool = ConnectionPool.from_url(
        redis_url,
        max_connections=max_connections,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30
    )
    logger.info(f"Redis connection pool created with {max_connections} max connections")
    return Redis(connection_pool=pool)


class CacheManager:
    """
    Document text cache keyed by document id and guarded by document version

    Args:
        redis_url: Redis connection URL; empty or None selects the in-process tier
        ttl: Entry lifetime in seconds
        max_memory_cache: Entry bound of the in-process tier
        max_retries: Compare-and-set attempts when a concurrent write interferes
        redis_client: Ready client to use instead of connecting to ``redis_url``
    """

    def __init__(self, redis_url: Optional[str] = None, ttl: int = 3600,
                 max_memory_cache: int = 1000, max_retries: int = 3,
                 redis_client: Optional[Redis] = None):
        self.ttl = ttl
        self.max_memory_cache = max_memory_cache
        self.max_retries = max_retries
        self.memory_cache: Dict[str, Dict[str, Any]] = {}
        self._memory_lock = threading.Lock()

        self.redis_client = redis_client
        self.redis_available = False
        self.last_redis_check = datetime.utcnow()
        self.redis_check_interval = timedelta(seconds=30)

        if self.redis_client is None and redis_url:
            try:
                self.redis_client = create_redis_client(redis_url)
            except (RedisError, ValueError) as e:
                logger.error(f"Invalid Redis configuration, text cache disabled: {e}")
                self.redis_client = None
                self.disabled = True
                return

        self.disabled = False
        if self.redis_client is not None:
            self._ping()

    @property
    def backend(self) -> str:
        if self.disabled:
            return "disabled"
        return "redis" if self.redis_client is not None else "memory"

    @staticmethod
    def text_key(document_id: str) -> str:
        """Cache key for the current text of a document"""
        return f"{KEY_PREFIX}:text:{document_id}"

    # Redis health
    def _ping(self) -> bool:
        try:
            self.redis_client.ping()
            if not self.redis_available:
                logger.info("Redis text cache available")
            self.redis_available = True
        except RedisError as e:
            if self.redis_available:
                logger.warning(f"Redis text cache unavailable, bypassing cache: {e}")
            self.redis_available = False
        self.last_redis_check = datetime.utcnow()
        return self.redis_available

    def _redis_ready(self) -> bool:
        if (datetime.utcnow() - self.last_redis_check) < self.redis_check_interval:
            return self.redis_available
        return self._ping()

    def _redis_failed(self, operation: str, error: RedisError):
        logger.warning(f"Redis {operation} failed, bypassing text cache: {error}")
        self.redis_available = False
        self.last_redis_check = datetime.utcnow()

    # Public API
    def get_text(self, document_id: str) -> Optional[CachedText]:
        """Cached text of a document, or None on a miss or a tombstone"""
        key = self.text_key(document_id)

        if self.backend == "redis":
            if not self._redis_ready():
                return None
            try:
                entry = _decode(self.redis_client.get(key))
            except RedisError as e:
                self._redis_failed("get", e)
                return None
        elif self.backend == "memory":
            entry = self._memory_get(key)
        else:
            return None

        if entry is None or entry.deleted:
            return None
        return entry

    def put_text(self, document_id: str, version: int, text_body: str) -> bool:
        """
        Store a text read at ``version`` unless a newer entry is cached

        Returns:
            True when the entry was written
        """
        return self._compare_and_set(
            self.text_key(document_id), CachedText(version=version, text=text_body)
        )

    def invalidate(self, document_id: str) -> bool:
        """Replace the entry of a deleted document with a tombstone"""
        return self._compare_and_set(
            self.text_key(document_id), CachedText(version=TOMBSTONE_VERSION, text=None)
        )

    def _compare_and_set(self, key: str, entry: CachedText) -> bool:
        if self.backend == "redis":
            if not self._redis_ready():
                return False
            try:
                return self._redis_compare_and_set(key, entry)
            except RedisError as e:
                self._redis_failed("write", e)
                return False
        if self.backend == "memory":
            return self._memory_compare_and_set(key, entry)
        return False

    def _redis_compare_and_set(self, key: str, entry: CachedText) -> bool:
        payload = _encode(entry)
        with self.redis_client.pipeline() as pipe:
            for attempt in range(self.max_retries):
                try:
                    pipe.watch(key)
                    current = _decode(pipe.get(key))
                    if current is not None and current.version > entry.version:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.set(key, payload, ex=self.ttl)
                    pipe.execute()
                    return True
                except WatchError:
                    logger.debug(f"Concurrent write on {key}, attempt {attempt + 1}")

        logger.warning(f"Gave up caching {key} after {self.max_retries} concurrent writes")
        return False

    # In-process tier
    def _memory_get(self, key: str) -> Optional[CachedText]:
        with self._memory_lock:
            item = self.memory_cache.get(key)
            if not item:
                return None
            now = datetime.utcnow()
            if item['expires'] <= now:
                del self.memory_cache[key]
                return None
            item['last_accessed'] = now
            return item['entry']

    def _memory_compare_and_set(self, key: str, entry: CachedText) -> bool:
        now = datetime.utcnow()
        with self._memory_lock:
            item = self.memory_cache.get(key)
            if item and item['expires'] > now and item['entry'].version > entry.version:
                return False

            if key not in self.memory_cache and len(self.memory_cache) >= self.max_memory_cache:
                self._evict()

            self.memory_cache[key] = {
                'entry': entry,
                'expires': now + timedelta(seconds=self.ttl),
                'last_accessed': now
            }
            return True

    def _evict(self):
        """Drop the least recently used tenth of the in-process tier"""
        count = max(1, self.max_memory_cache // 10)
        oldest = sorted(self.memory_cache.items(), key=lambda x: x[1]['last_accessed'])[:count]
        for old_key, _ in oldest:
            del self.memory_cache[old_key]
        logger.debug(f"Evicted {count} text cache entries")

    # Maintenance
    def get_stats(self) -> Dict[str, Any]:
        stats = {
            'backend': self.backend,
            'redis_available': self.redis_available,
            'memory_cache_size': len(self.memory_cache),
            'memory_cache_max': self.max_memory_cache,
            'ttl': self.ttl
        }

        if self.backend == "redis" and self._redis_ready():
            try:
                info = self.redis_client.info('memory')
                stats['redis_memory_used'] = info.get('used_memory_human', 'N/A')
            except RedisError as e:
                logger.debug(f"Redis info unavailable: {e}")

        return stats

    def clear_expired(self) -> int:
        """Drop expired in-process entries; Redis expires its own"""
        now = datetime.utcnow()
        with self._memory_lock:
            expired = [k for k, v in self.memory_cache.items() if v['expires'] <= now]
            for key in expired:
                del self.memory_cache[key]

        if expired:
            logger.info(f"Cleared {len(expired)} expired text cache entries")
        return len(expired)

    def close(self):
        if self.redis_client is not None:
            try:
                self.redis_client.close()
            except RedisError as e:
                logger.debug(f"Error closing Redis client: {e}")
        with self._memory_lock:
            self.memory_cache.clear()
