from abc import ABC, abstractmethod
from collections import deque
from typing import Optional, Type, TypeVar, Generic
from pydantic import BaseModel
import redis
import time
import asyncio

from .config import Settings
from .logging_util import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

class PersistenceProvider(ABC, Generic[T]):
    def __init__(self, model_class: Type[T]):
        self.model_class = model_class

    @abstractmethod
    def set(self, key: str, value: T, ttl_in_sec: Optional[int] = None) -> None:
        """Store the model instance with an optional TTL."""
        pass

    @abstractmethod
    def get(self, key: str) -> Optional[T]:
        """Retrieve and validate the model instance."""
        pass

    @abstractmethod
    def pop(self, key: str) -> Optional[T]:
        """Retrieve and remove the model instance in one step."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the key from storage."""
        pass


class InMemoryProvider(PersistenceProvider[T]):
    def __init__(self, model_class: Type[T]):
        super().__init__(model_class)
        self._data: dict[str, str] = {}
        self._expires_at: dict[str, float] = {}
        self._expiry_queue: deque[tuple[float, str]] = deque()

    def _expired(self, key: str) -> bool:
        expires_at = self._expires_at.get(key)
        return expires_at is not None and expires_at <= time.time()

    def set(self, key: str, value: T, ttl_in_sec: Optional[int] = None) -> None:
        self._data[key] = value.model_dump_json()
        self._expires_at.pop(key, None)
        if ttl_in_sec:
            expiry_time = time.time() + ttl_in_sec
            self._expires_at[key] = expiry_time
            self._expiry_queue.append((expiry_time, key))

    def get(self, key: str) -> Optional[T]:
        if self._expired(key):
            self.delete(key)
            return None
        raw = self._data.get(key)
        return self.model_class.model_validate_json(raw) if raw else None

    def pop(self, key: str) -> Optional[T]:
        value = self.get(key)
        self.delete(key)
        return value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._expires_at.pop(key, None)

    def cleanup_expired(self) -> int:
        """Removes expired items and returns the count of deleted items."""
        now = time.time()
        count = 0
        while self._expiry_queue and self._expiry_queue[0][0] <= now:
            _, key = self._expiry_queue.popleft()
            if key in self._data and self._expired(key):
                logger.debug(f"Cleaning up expired key: {key}")
                self.delete(key)
                count += 1
        return count



class RedisProvider(PersistenceProvider[T]):
    def __init__(
        self,
        model_class: Type[T],
        prefix: str,
        host: str = "localhost",
        port: int = 6379,
        client: Optional[redis.Redis] = None,
    ):
        super().__init__(model_class)
        self.client = client or redis.Redis(host=host, port=port, decode_responses=True)
        self.prefix = prefix

    def _get_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def set(self, key: str, value: T, ttl_in_sec: Optional[int] = None) -> None:
        full_key = self._get_key(key)
        self.client.set(full_key, value.model_dump_json(), ex=ttl_in_sec)

    def get(self, key: str) -> Optional[T]:
        raw = self.client.get(self._get_key(key))
        return self.model_class.model_validate_json(raw) if raw else None

    def pop(self, key: str) -> Optional[T]:
        raw = self.client.getdel(self._get_key(key))
        return self.model_class.model_validate_json(raw) if raw else None

    def delete(self, key: str) -> None:
        self.client.delete(self._get_key(key))


class PersistenceFactory:
    @staticmethod
    def create(model_class: Type[T], scope: str) -> PersistenceProvider[T]:
        mode = Settings.STORAGE_BACKEND

        if mode == "redis":
            logger.info(f"Using redis persistence for '{scope}' ({Settings.REDIS_HOST}:{Settings.REDIS_PORT})")
            return RedisProvider(
                model_class=model_class,
                host=Settings.REDIS_HOST,
                port=Settings.REDIS_PORT,
                prefix=scope
            )
        return InMemoryProvider(model_class=model_class)


async def ttl_cleanup_task(provider: InMemoryProvider, interval: float = 60):
    logger.debug(f"Starting TTL cleanup task for {provider.model_class.__name__} store")
    while True:
        try:
            removed = provider.cleanup_expired()
            if removed:
                logger.debug(f"Removed {removed} expired {provider.model_class.__name__} entries")
        except Exception as e:
            logger.error(f"Cleanup error: {e}", exc_info=True)
        await asyncio.sleep(interval)
