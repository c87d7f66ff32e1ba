"""
Tests for call_bridge/permissions.py
"""

import pytest

from call_bridge.errors import PermissionDeniedError
from call_bridge.permissions import (
    CALL_PHONE, READ_EXTERNAL_STORAGE, READ_PHONE_STATE, GrantAllPermissions, acquire_permissions
)
from fakes import StaticPermissions


def test_all_granted():
    grants = acquire_permissions(GrantAllPermissions())
    assert grants == {READ_PHONE_STATE: True, READ_EXTERNAL_STORAGE: True, CALL_PHONE: True}


def test_requests_every_permission_once():
    provider = StaticPermissions()
    acquire_permissions(provider)
    assert provider.requested == [[READ_PHONE_STATE, READ_EXTERNAL_STORAGE, CALL_PHONE]]


def test_optional_denial_is_not_fatal():
    grants = acquire_permissions(StaticPermissions(denied={CALL_PHONE}))
    assert grants[CALL_PHONE] is False


def test_required_denials_listed():
    with pytest.raises(PermissionDeniedError) as excinfo:
        acquire_permissions(StaticPermissions(denied={READ_PHONE_STATE, READ_EXTERNAL_STORAGE, CALL_PHONE}))

    assert excinfo.value.denied == sorted([READ_PHONE_STATE, READ_EXTERNAL_STORAGE])
    assert "Phone state and storage access are required" in str(excinfo.value)


def test_provider_returning_nothing_counts_as_denied():
    class SilentProvider:
        def request(self, permissions):
            return None

    with pytest.raises(PermissionDeniedError):
        acquire_permissions(SilentProvider())
