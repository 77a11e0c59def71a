"""RedisCache command mapping, exercised against a mocked client."""

import json
from unittest.mock import MagicMock

import pytest

from gatehouse.service.rate_limit import RateLimiter
from gatehouse.storage.redis_cache import RedisCache


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def cache(client):
    return RedisCache(client=client, prefix="t:")


def test_requires_url_or_client():
    with pytest.raises(ValueError):
        RedisCache()


def test_get_decodes_json(cache, client):
    client.get.return_value = json.dumps({"a": 1})
    assert cache.get("k") == {"a": 1}
    client.get.assert_called_once_with("t:k")


def test_get_missing_and_invalid(cache, client):
    client.get.return_value = None
    assert cache.get("k", "d") == "d"
    client.get.return_value = "{not json"
    assert cache.get("k", "d") == "d"


def test_put_with_ttl(cache, client):
    cache.put("k", [1, 2], 30)
    client.set.assert_called_once_with("t:k", "[1, 2]", ex=30)


def test_put_non_positive_ttl_deletes(cache, client):
    cache.put("k", 1, 0)
    client.delete.assert_called_once_with("t:k")
    client.set.assert_not_called()


def test_add_uses_nx(cache, client):
    client.set.return_value = None
    assert cache.add("k", 0, 60) is False
    client.set.assert_called_once_with("t:k", "0", ex=60, nx=True)
    client.set.return_value = True
    assert cache.add("k", 0, 60) is True


def test_add_non_positive_ttl_is_refused(cache, client):
    assert cache.add("k", 0, 0) is False
    client.set.assert_not_called()


def test_increment_and_forget(cache, client):
    client.incrby.return_value = 3
    assert cache.increment("k", 2) == 3
    client.incrby.assert_called_once_with("t:k", 2)
    client.delete.return_value = 1
    assert cache.forget("k") is True
    client.exists.return_value = 0
    assert cache.has("k") is False


def test_verify_connection_pings(cache, client):
    cache.verify_connection()
    client.ping.assert_called_once_with()


def test_limiter_hit_sequence(client):
    cache = RedisCache(client=client, prefix="")
    client.set.return_value = True
    client.incrby.return_value = 1
    limiter = RateLimiter(cache, clock=lambda: 1000.0)

    assert limiter.hit("login", 60) == 1
    timer_call, counter_call = client.set.call_args_list
    assert timer_call.args == ("login:timer", "1060")
    assert timer_call.kwargs == {"ex": 60, "nx": True}
    assert counter_call.args == ("login", "0")
    client.incrby.assert_called_once_with("login", 1)
