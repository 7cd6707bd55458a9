import pytest

from securesnap.service.devices import MAX_DEVICE_NAME_LENGTH, DeviceTrustRegistry
from securesnap.storage.common import digest_token


@pytest.fixture
def user(store):
    return store.create_user("frank@example.com", "hash")


@pytest.fixture
def devices(store, clock):
    return DeviceTrustRegistry(store, ttl_days=30, clock=clock)


class TestDeviceTrust:
    def test_issued_token_verifies_for_owner(self, devices, user):
        token = devices.issue(user.id, "Laptop")
        assert len(token) == 64
        assert devices.verify(user.id, token)

    def test_token_bound_to_user(self, devices, store, user):
        token = devices.issue(user.id)
        other = store.create_user("grace@example.com", "hash")
        assert not devices.verify(other.id, token)

    def test_only_hash_is_stored(self, devices, store, user):
        token = devices.issue(user.id)
        assert token not in store.trusted_devices
        assert digest_token(token) in store.trusted_devices

    def test_expires_after_ttl(self, devices, clock, user):
        token = devices.issue(user.id)
        clock.advance(days=29, hours=23)
        assert devices.verify(user.id, token)
        clock.advance(hours=1)
        assert not devices.verify(user.id, token)

    def test_use_does_not_extend_expiry(self, devices, clock, user):
        token = devices.issue(user.id)
        [record] = devices.list_devices(user.id)
        clock.advance(days=10)
        devices.verify(user.id, token)
        [touched] = devices.list_devices(user.id)
        assert touched.expires_at == record.expires_at
        assert touched.last_used_at == clock()

    @pytest.mark.parametrize("token", [None, "", "0" * 64])
    def test_missing_or_unknown_token(self, devices, user, token):
        assert not devices.verify(user.id, token)

    def test_long_names_are_trimmed(self, devices, user):
        devices.issue(user.id, "  " + "x" * 500 + "  ")
        [record] = devices.list_devices(user.id)
        assert len(record.device_name) == MAX_DEVICE_NAME_LENGTH

    def test_blank_name_stored_as_none(self, devices, user):
        devices.issue(user.id, "   ")
        [record] = devices.list_devices(user.id)
        assert record.device_name is None

    def test_revoke_all(self, devices, user):
        first = devices.issue(user.id)
        second = devices.issue(user.id)
        assert devices.revoke_all(user.id) == 2
        assert not devices.verify(user.id, first)
        assert not devices.verify(user.id, second)
