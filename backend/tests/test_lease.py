"""
Redis Lease Test Suite
"""

from unittest.mock import MagicMock

import pytest

from changedetect.core.exceptions import LeaseError
from changedetect.infrastructure.cache.lease import RedisLease

@pytest.fixture
def client():
    client = MagicMock()
    client.set.return_value = True
    release, renew = MagicMock(return_value=1), MagicMock(return_value=1)
    client.register_script.side_effect = [release, renew]
    client.release_script, client.renew_script = release, renew
    return client

@pytest.fixture
def lease(client):
    return RedisLease(client, "changedetect:publish", ttl_seconds=30)

class TestRedisLease:

    def test_acquire_sets_key_with_expiry(self, lease, client):
        assert lease.acquire() is True
        assert lease.is_held

        key, token = client.set.call_args.args
        assert key == "changedetect:publish"
        assert token == lease.token
        assert client.set.call_args.kwargs == {"nx": True, "px": 30000}

    def test_busy_key(self, lease, client):
        client.set.return_value = None

        assert lease.acquire() is False
        assert not lease.is_held

    def test_release_only_with_own_token(self, lease, client):
        lease.acquire()
        token = lease.token

        assert lease.release() is True
        client.release_script.assert_called_once_with(keys=["changedetect:publish"], args=[token])
        assert not lease.is_held
        assert lease.release() is False

    def test_release_after_expiry(self, lease, client):
        lease.acquire()
        client.release_script.return_value = 0

        assert lease.release() is False
        assert not lease.is_held

    def test_renew(self, lease, client):
        assert lease.renew() is False

        lease.acquire()
        assert lease.renew() is True
        client.renew_script.assert_called_once_with(keys=["changedetect:publish"], args=[lease.token, 30000])

    def test_lost_lease_cannot_be_renewed(self, lease, client):
        lease.acquire()
        client.renew_script.return_value = 0

        assert lease.renew() is False
        assert not lease.is_held

    def test_held_context(self, lease, client):
        with lease.held() as held:
            assert held.is_held
        assert not lease.is_held

        client.set.return_value = None
        with pytest.raises(LeaseError):
            with lease.held():
                pass
