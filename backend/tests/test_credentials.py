from __future__ import annotations

from inbound_gateway.models import CredentialStatus
from inbound_gateway.repositories.credentials import CredentialStore
from inbound_gateway.repositories.orders import now_ms


def test_create_key_issues_prefixed_key_and_secret(store: CredentialStore) -> None:
    credential = store.create_key("mobile", allowed_ips={"198.51.100.1"})

    assert credential.key.startswith("xui_")
    assert len(credential.key) == 36
    assert len(credential.secret) == 64
    assert credential.status is CredentialStatus.ACTIVE
    assert credential.rate_limit == 100
    assert credential.allowed_ips == frozenset({"198.51.100.1"})
    assert credential.secret not in repr(credential)


def test_timestamps_are_milliseconds(store: CredentialStore) -> None:
    before = now_ms()
    credential = store.create_key("mobile")

    store.touch_last_used(credential.key)

    touched = store.get(credential.key)
    assert before <= credential.created_at <= now_ms()
    assert before <= touched.last_used_at <= now_ms()


def test_status_toggle_and_lookup_by_name(store: CredentialStore) -> None:
    credential = store.create_key("backend")

    assert store.find_active_by_name("backend") == credential
    assert store.set_status(credential.key, CredentialStatus.INACTIVE)
    assert store.find_active_by_name("backend") is None
    assert not store.set_status("xui_unknown", CredentialStatus.ACTIVE)


def test_delete_key(store: CredentialStore) -> None:
    credential = store.create_key("temporary")

    assert store.delete_key(credential.key)
    assert store.get(credential.key) is None
    assert not store.delete_key(credential.key)
