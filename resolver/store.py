"""
Order persistence.

Orders are stored as their to_dict() form keyed by order hash, so every
backend returns fresh copies and callers never share mutable state.

Backends:
- MemoryOrderStore   memory://
- JSONFileOrderStore file://<path>
- RedisOrderStore    redis://host:port/db
"""

import os
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Any

import redis

from .core import Order
from .errors import OrderNotFound, StoreUnavailable, ConfigurationError

log = logging.getLogger(__name__)


class OrderStore(ABC):

    @abstractmethod
    def get(self, order_hash: str) -> Order:
        """Raises OrderNotFound."""

    @abstractmethod
    def put(self, order_hash: str, order: Order):
        pass

    @abstractmethod
    def list_all(self) -> List[Order]:
        pass

    def exists(self, order_hash: str) -> bool:
        try:
            self.get(order_hash)
            return True
        except OrderNotFound:
            return False


def _key(order_hash: str) -> str:
    return order_hash.lower()


class MemoryOrderStore(OrderStore):

    def __init__(self):
        self._orders: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, order_hash: str) -> Order:
        with self._lock:
            data = self._orders.get(_key(order_hash))
        if data is None:
            raise OrderNotFound(f"Order {order_hash} not found", order_hash=order_hash)
        return Order.from_dict(data)

    def put(self, order_hash: str, order: Order):
        data = order.to_dict()
        with self._lock:
            self._orders[_key(order_hash)] = data

    def list_all(self) -> List[Order]:
        with self._lock:
            items = list(self._orders.values())
        return [Order.from_dict(d) for d in items]


class JSONFileOrderStore(OrderStore):
    """Whole-map JSON file, rewritten atomically on every put."""

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)
        self._lock = threading.Lock()
        self._orders: Dict[str, Dict[str, Any]] = self._load()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                orders = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreUnavailable(f"Cannot read order store {self.path}: {e}")
        log.info(f"Loaded {len(orders)} orders from {self.path}")
        return orders

    def _save(self):
        directory = os.path.dirname(self.path)
        tmp = self.path + ".tmp"
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp, "w") as f:
                json.dump(self._orders, f, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreUnavailable(f"Cannot write order store {self.path}: {e}")

    def get(self, order_hash: str) -> Order:
        with self._lock:
            data = self._orders.get(_key(order_hash))
        if data is None:
            raise OrderNotFound(f"Order {order_hash} not found", order_hash=order_hash)
        return Order.from_dict(data)

    def put(self, order_hash: str, order: Order):
        data = order.to_dict()
        with self._lock:
            previous = self._orders.get(_key(order_hash))
            self._orders[_key(order_hash)] = data
            try:
                self._save()
            except StoreUnavailable:
                # keep memory consistent with disk
                if previous is None:
                    self._orders.pop(_key(order_hash), None)
                else:
                    self._orders[_key(order_hash)] = previous
                raise

    def list_all(self) -> List[Order]:
        with self._lock:
            items = list(self._orders.values())
        return [Order.from_dict(d) for d in items]


class RedisOrderStore(OrderStore):
    """Orders in one Redis hash (field = order hash, value = JSON)."""

    def __init__(self, url: str, key: str = "orders", client: redis.Redis = None):
        self.key = key
        self._redis = client or redis.Redis.from_url(url, decode_responses=True)

    def get(self, order_hash: str) -> Order:
        try:
            raw = self._redis.hget(self.key, _key(order_hash))
        except redis.RedisError as e:
            raise StoreUnavailable(f"Redis unavailable: {e}")
        if raw is None:
            raise OrderNotFound(f"Order {order_hash} not found", order_hash=order_hash)
        return Order.from_dict(json.loads(raw))

    def put(self, order_hash: str, order: Order):
        try:
            self._redis.hset(self.key, _key(order_hash), json.dumps(order.to_dict()))
        except redis.RedisError as e:
            raise StoreUnavailable(f"Redis unavailable: {e}")

    def list_all(self) -> List[Order]:
        try:
            values = self._redis.hvals(self.key)
        except redis.RedisError as e:
            raise StoreUnavailable(f"Redis unavailable: {e}")
        return [Order.from_dict(json.loads(v)) for v in values]


def build_store(url: str) -> OrderStore:
    """Pick a backend from a store URL."""
    url = url or "memory://"
    if url.startswith("memory://"):
        return MemoryOrderStore()
    if url.startswith("file://"):
        return JSONFileOrderStore(url[len("file://"):])
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisOrderStore(url)
    raise ConfigurationError(f"Unsupported order store URL: {url}")
