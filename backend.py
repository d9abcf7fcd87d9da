import asyncio
import re
from typing import Any, Callable, Iterable, Optional

import redis
import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from constants import DISCONNECT_LEASE_SECONDS, REDIS_DB, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT, STORE_BACKEND
from errors import StoreUnavailable
from logging_config import get_logger
from store import ABORT, Callback, SharedStateStore, Unsubscribe, build_tree, call_maybe_async, decode_value, encode_value

logger = get_logger(__name__)

KEYSPACE_CHANNEL = "__keyspace@{db}__:{pattern}"
# K = keyspace channel, A = every event class (set, del, expired, ...)
KEYSPACE_EVENTS = "KA"


def escape_glob(path: str) -> str:
    return re.sub(r"([\\*?\[\]])", r"\\\1", path)


class RedisBackend(SharedStateStore):
    """Store paths are Redis keys, leaf values are JSON strings.

    Children of a path are the keys prefixed with ``path/``. Watches ride on
    keyspace notifications. Remove-on-disconnect is a TTL lease: paths this
    client wrote under a rule carry an expiry that a keeper task refreshes, so
    they vanish on their own when the process dies, and ``close()`` deletes
    them right away.
    """

    def __init__(self, host: str = REDIS_HOST, port: int = REDIS_PORT, password: str = REDIS_PASSWORD,
                 db: int = REDIS_DB, lease_seconds: int = DISCONNECT_LEASE_SECONDS,
                 redis_client: Optional[aioredis.Redis] = None, pubsub_client: Optional[aioredis.Redis] = None):
        self.host = host
        self.port = port
        self.password = password
        self.db = db
        self.lease_seconds = lease_seconds
        logger.info(f"Initializing RedisBackend with connection to {host}:{port}")
        if redis_client is None:
            redis_client = aioredis.Redis(host=host, port=port, password=password, db=db, decode_responses=True)
        if pubsub_client is None:
            # Separate connection for pub/sub (required by Redis)
            pubsub_client = aioredis.Redis(host=host, port=port, password=password, db=db, decode_responses=True)
        self.redis_client = redis_client
        self.pubsub_client = pubsub_client
        self._disconnect_paths: set = set()
        # leased paths this client has actually written
        self._owned_paths: set = set()
        self._lease_task = None
        self._watch_tasks: set = set()

    async def connect(self):
        try:
            await self.redis_client.ping()
            await self.pubsub_client.ping()
            logger.info(f"Redis client connected successfully to {self.host}:{self.port}")
        except RedisError as e:
            logger.error(f"Failed to connect to Redis at {self.host}:{self.port}: {e}", exc_info=True)
            raise StoreUnavailable(f"Cannot reach Redis at {self.host}:{self.port}") from e

        try:
            await self.redis_client.config_set("notify-keyspace-events", KEYSPACE_EVENTS)
        except RedisError as e:
            # Managed Redis often forbids CONFIG; the server must then be configured with KA already
            logger.warning(f"Could not enable keyspace notifications: {e}")

        if self._lease_task is None or self._lease_task.done():
            self._lease_task = asyncio.create_task(self._keep_leases())

    async def close(self):
        logger.info("Closing RedisBackend")
        tasks = [t for t in [self._lease_task, *self._watch_tasks] if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._lease_task = None

        owned = sorted(self._owned_paths)
        if owned:
            try:
                await self.redis_client.delete(*owned)
                logger.debug(f"Removed disconnect-ruled paths on close: {owned}")
            except RedisError as e:
                logger.warning(f"Could not remove {owned} on close, leases will expire them: {e}")
        self._owned_paths.clear()
        self._disconnect_paths.clear()

        await self.redis_client.aclose()
        await self.pubsub_client.aclose()

    def _unavailable(self, action: str, path: str, error: Exception) -> StoreUnavailable:
        logger.error(f"Redis {action} failed for {path}: {error}", exc_info=True)
        return StoreUnavailable(f"Store {action} failed for {path}")

    def _lease_for(self, path: str):
        return self.lease_seconds if path in self._disconnect_paths else None

    def _track(self, path: str, value: Any):
        if value is not None and path in self._disconnect_paths:
            self._owned_paths.add(path)
        else:
            self._owned_paths.discard(path)

    async def _descendant_keys(self, path: str) -> list:
        keys = []
        async for key in self.redis_client.scan_iter(match=f"{escape_glob(path)}/*", count=200):
            keys.append(key)
        return keys

    async def get(self, path: str) -> Any:
        try:
            raw = await self.redis_client.get(path)
            if raw is not None:
                return decode_value(raw)
            keys = await self._descendant_keys(path)
            if not keys:
                return None
            values = await self.redis_client.mget(keys)
        except RedisError as e:
            raise self._unavailable("read", path, e) from e
        entries = {key: decode_value(raw) for key, raw in zip(keys, values) if raw is not None}
        return build_tree(path, entries)

    async def set(self, path: str, value: Any):
        try:
            doomed = await self._descendant_keys(path)
            async with self.redis_client.pipeline(transaction=True) as pipe:
                if doomed:
                    pipe.delete(*doomed)
                if value is None:
                    pipe.delete(path)
                else:
                    pipe.set(path, encode_value(value), ex=self._lease_for(path))
                await pipe.execute()
        except RedisError as e:
            raise self._unavailable("write", path, e) from e
        self._track(path, value)
        logger.debug(f"Wrote {path}")

    async def remove(self, path: str):
        try:
            keys = [path] + await self._descendant_keys(path)
            deleted = await self.redis_client.delete(*keys)
        except RedisError as e:
            raise self._unavailable("remove", path, e) from e
        self._owned_paths.discard(path)
        logger.debug(f"Removed {path}: {deleted} keys")

    async def transaction(self, path: str, update: Callable[[Any], Any]):
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(path)
                        current = decode_value(await pipe.get(path))
                        new_value = update(current)
                        if new_value is ABORT:
                            await pipe.unwatch()
                            return False, current
                        pipe.multi()
                        if new_value is None:
                            pipe.delete(path)
                        else:
                            pipe.set(path, encode_value(new_value), ex=self._lease_for(path))
                        await pipe.execute()
                        break
                    except WatchError:
                        logger.debug(f"Concurrent write on {path}, retrying transaction")
                        continue
        except RedisError as e:
            raise self._unavailable("transaction", path, e) from e
        self._track(path, new_value)
        return True, new_value

    async def on_disconnect_remove(self, path: str):
        self._disconnect_paths.add(path)
        logger.debug(f"Registered remove-on-disconnect for {path}")

    async def cancel_on_disconnect(self, path: str):
        self._disconnect_paths.discard(path)
        if path in self._owned_paths:
            self._owned_paths.discard(path)
            try:
                await self.redis_client.persist(path)
            except RedisError as e:
                logger.warning(f"Could not drop lease on {path}: {e}")

    async def _keep_leases(self):
        interval = max(self.lease_seconds / 3, 1)
        try:
            while True:
                await asyncio.sleep(interval)
                for path in list(self._owned_paths):
                    try:
                        await self.redis_client.expire(path, self.lease_seconds)
                    except RedisError as e:
                        logger.warning(f"Failed to refresh lease on {path}: {e}")
        except asyncio.CancelledError:
            logger.debug("Lease keeper stopped")

    def _channel(self, pattern: str) -> str:
        return KEYSPACE_CHANNEL.format(db=self.db, pattern=pattern)

    async def watch(self, path: str, callback: Callback) -> Unsubscribe:
        pubsub = self.pubsub_client.pubsub()
        try:
            # subscribe first so no change between the initial read and the listener is lost
            await pubsub.psubscribe(self._channel(escape_glob(path)), self._channel(f"{escape_glob(path)}/*"))
            logger.debug(f"Subscribed to keyspace events for {path}")
        except RedisError as e:
            raise self._unavailable("subscribe", path, e) from e

        initial = await self.get(path)
        await self._deliver(path, callback, initial)

        task = asyncio.create_task(self._listen(path, pubsub, callback, initial))
        self._watch_tasks.add(task)
        task.add_done_callback(self._watch_tasks.discard)

        def unsubscribe():
            task.cancel()

        return unsubscribe

    async def _deliver(self, path: str, callback: Callback, value: Any):
        try:
            await call_maybe_async(callback, value)
        except Exception as e:
            logger.error(f"Watch callback for {path} failed: {e}", exc_info=True)

    async def _listen(self, path: str, pubsub, callback: Callback, last_value: Any):
        """Re-read ``path`` on every keyspace event and forward changed values."""
        logger.info(f"Starting keyspace listener for {path}")
        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                logger.debug(f"Keyspace event {message.get('data')} on {message.get('channel')}")
                try:
                    value = await self.get(path)
                except StoreUnavailable:
                    continue
                if value == last_value:
                    continue
                last_value = value
                await self._deliver(path, callback, value)
        except asyncio.CancelledError:
            logger.info(f"Keyspace listener cancelled for {path}")
        except Exception as e:
            logger.error(f"Error in keyspace listener for {path}: {e}", exc_info=True)
        finally:
            try:
                await pubsub.aclose()
                logger.debug(f"Closed pub/sub connection for {path}")
            except Exception as e:
                logger.error(f"Error closing pub/sub for {path}: {e}")

    async def server_time_ms(self) -> int:
        try:
            seconds, microseconds = await self.redis_client.time()
        except RedisError as e:
            raise self._unavailable("time", "TIME", e) from e
        return int(seconds) * 1000 + int(microseconds) // 1000

    def remove_blocking(self, paths: Iterable[str]):
        paths = list(paths)
        if not paths:
            return
        client = redis.Redis(host=self.host, port=self.port, password=self.password, db=self.db,
                             decode_responses=True, socket_timeout=2)
        try:
            client.delete(*paths)
            logger.info(f"Removed {paths} during shutdown")
        except RedisError as e:
            logger.warning(f"Shutdown cleanup of {paths} failed: {e}")
        finally:
            client.close()


def create_backend(kind: str = STORE_BACKEND) -> SharedStateStore:
    if kind == "memory":
        from memory_backend import MemoryBackend
        return MemoryBackend()
    return RedisBackend()
