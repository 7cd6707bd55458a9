from securesnap.storage.redis_cache import RedisCache


class FakeAsyncRedis:
    def __init__(self):
        self.values = {}
        self.ttls = {}

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.ttls[key] = ex

    async def get(self, key):
        return self.values.get(key)


def _cache():
    # from_url does not connect until the first command.
    cache = RedisCache("redis://localhost:6379/0")
    cache.client = FakeAsyncRedis()
    return cache


async def test_status_round_trip_uses_namespaced_key():
    cache = _cache()
    await cache.cache_qr_status("a" * 32, "cancelled")
    assert cache.client.values == {f"auth:qr_status:{'a' * 32}": "cancelled"}
    assert await cache.get_qr_status("a" * 32) == "cancelled"
    assert await cache.get_qr_status("b" * 32) is None


async def test_default_and_explicit_ttl():
    cache = _cache()
    await cache.cache_qr_status("one", "expired")
    await cache.cache_qr_status("two", "expired", ttl_seconds=30)
    assert cache.client.ttls["auth:qr_status:one"] == RedisCache.QR_STATUS_TTL_SECONDS
    assert cache.client.ttls["auth:qr_status:two"] == 30
