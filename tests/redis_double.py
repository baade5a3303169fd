import threading
import time

from redis.exceptions import ConnectionError as RedisConnectionError


class InMemoryRedis:
    """Thread-safe stand-in for a ``decode_responses=True`` redis client.

    Covers the commands the service issues. ``fail_commands`` makes the named
    commands raise a redis ConnectionError, the way a dropped connection does.
    Expiry is recorded, not enforced; ``expiry_of`` exposes it to assertions.
    """

    def __init__(self):
        self._data = {}
        self._expiry = {}
        self._lock = threading.RLock()
        self.fail_commands = set()
        self.calls = []

    def _check(self, command):
        self.calls.append(command)
        if command in self.fail_commands:
            raise RedisConnectionError(f"simulated {command} failure")

    @staticmethod
    def _s(value):
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    def _hash(self, key, create=False):
        value = self._data.get(key)
        if value is None and create:
            value = {}
            self._data[key] = value
        return value

    # -- generic ---------------------------------------------------------

    def ping(self):
        self._check("ping")
        return True

    def exists(self, *keys):
        self._check("exists")
        with self._lock:
            return sum(1 for k in keys if k in self._data)

    def delete(self, *keys):
        self._check("delete")
        with self._lock:
            removed = 0
            for k in keys:
                if self._data.pop(k, None) is not None:
                    removed += 1
                self._expiry.pop(k, None)
            return removed

    def expire(self, key, seconds):
        self._check("expire")
        with self._lock:
            if key not in self._data:
                return False
            self._expiry[key] = int(time.time()) + int(seconds)
            return True

    def expireat(self, key, when):
        self._check("expireat")
        with self._lock:
            if key not in self._data:
                return False
            self._expiry[key] = int(when)
            return True

    def expiry_of(self, key):
        return self._expiry.get(key)

    def keys_with_prefix(self, prefix):
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    # -- strings ---------------------------------------------------------

    def get(self, key):
        self._check("get")
        with self._lock:
            value = self._data.get(key)
            return value if isinstance(value, str) else None

    def set(self, key, value, ex=None, px=None, nx=False, exat=None):
        self._check("set")
        with self._lock:
            if nx and key in self._data:
                return None
            self._data[key] = self._s(value)
            if ex is not None:
                self._expiry[key] = int(time.time()) + int(ex)
            elif exat is not None:
                self._expiry[key] = int(exat)
            else:
                self._expiry.pop(key, None)
            return True

    # -- hashes ----------------------------------------------------------

    def hget(self, key, field):
        self._check("hget")
        with self._lock:
            return (self._hash(key) or {}).get(field)

    def hgetall(self, key):
        self._check("hgetall")
        with self._lock:
            return dict(self._hash(key) or {})

    def hset(self, key, field=None, value=None, mapping=None):
        self._check("hset")
        with self._lock:
            h = self._hash(key, create=True)
            items = dict(mapping or {})
            if field is not None:
                items[field] = value
            added = 0
            for f, v in items.items():
                if f not in h:
                    added += 1
                h[f] = self._s(v)
            return added

    def hsetnx(self, key, field, value):
        self._check("hsetnx")
        with self._lock:
            h = self._hash(key, create=True)
            if field in h:
                return 0
            h[field] = self._s(value)
            return 1

    # -- sets ------------------------------------------------------------

    def sadd(self, key, *members):
        self._check("sadd")
        with self._lock:
            s = self._data.setdefault(key, set())
            before = len(s)
            s.update(self._s(m) for m in members)
            return len(s) - before

    def smembers(self, key):
        self._check("smembers")
        with self._lock:
            return set(self._data.get(key) or set())

    def scard(self, key):
        self._check("scard")
        with self._lock:
            return len(self._data.get(key) or set())
