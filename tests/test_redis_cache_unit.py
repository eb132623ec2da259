from redis.exceptions import ConnectionError as RedisConnectionError

from lettera.storage.redis_cache import RedisCache


class FakePipeline:
    def __init__(self, results):
        self.commands = []
        self.results = results

    def delete(self, key):
        self.commands.append(("DEL", key))

    def sadd(self, key, member):
        self.commands.append(("SADD", key, member))

    def expire(self, key, ttl):
        self.commands.append(("EXPIRE", key, ttl))

    async def execute(self):
        return self.results[: len(self.commands)]


class FakeClient:
    def __init__(self, pipeline_results=(1, 1, True), ping_error=None):
        self.pipelines = []
        self.pipeline_results = list(pipeline_results)
        self.ping_error = ping_error

    def pipeline(self, transaction=True):
        pipe = FakePipeline(self.pipeline_results)
        self.pipelines.append((transaction, pipe))
        return pipe

    async def ping(self):
        if self.ping_error:
            raise self.ping_error
        return True


def _cache(client) -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://unit-test"
    cache.socket_timeout = 1.0
    cache.client = client
    return cache


async def test_replace_runs_del_sadd_expire_in_one_transaction():
    client = FakeClient(pipeline_results=[1, 1, True])
    cache = _cache(client)
    assert await cache.add_member("user:refresh_token:u1", "t", 60, replace=True) is True
    transaction, pipe = client.pipelines[0]
    assert transaction is True
    assert pipe.commands == [
        ("DEL", "user:refresh_token:u1"),
        ("SADD", "user:refresh_token:u1", "t"),
        ("EXPIRE", "user:refresh_token:u1", 60),
    ]


async def test_add_existing_member_reports_false():
    cache = _cache(FakeClient(pipeline_results=[0, True]))
    assert await cache.add_member("s", "m", 60) is False


async def test_ping_swallows_connection_errors():
    cache = _cache(FakeClient(ping_error=RedisConnectionError("down")))
    assert await cache.ping() is False
    assert await _cache(FakeClient()).ping() is True
