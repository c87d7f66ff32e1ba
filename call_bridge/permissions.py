#!/usr/bin/env python3
"""
Device permission checks required before the bridge can run.
"""

import logging
from typing import Dict, Iterable

from call_bridge.errors import PermissionDeniedError

READ_PHONE_STATE = "android.permission.READ_PHONE_STATE"
READ_EXTERNAL_STORAGE = "android.permission.READ_EXTERNAL_STORAGE"
CALL_PHONE = "android.permission.CALL_PHONE"

# Without these the bridge cannot see calls or recordings at all
REQUIRED_PERMISSIONS = (READ_PHONE_STATE, READ_EXTERNAL_STORAGE)

# Only needed to place calls for remote dial requests
OPTIONAL_PERMISSIONS = (CALL_PHONE,)


class GrantAllPermissions:
    """Permission collaborator for hosts without a runtime permission model."""

    def request(self, permissions: Iterable[str]) -> Dict[str, bool]:
        return {permission: True for permission in permissions}


def acquire_permissions(provider, logger=None) -> Dict[str, bool]:
    """
    Request all permissions the bridge uses.

    Raises:
        PermissionDeniedError: if any required permission is denied

    Returns:
        The grant map, including optional permissions
    """
    logger = logger or logging.getLogger(__name__)
    wanted = list(REQUIRED_PERMISSIONS) + list(OPTIONAL_PERMISSIONS)
    grants = dict(provider.request(wanted) or {})

    denied = [p for p in REQUIRED_PERMISSIONS if not grants.get(p)]
    if denied:
        logger.error(f"[Permissions] ❌ Denied: {', '.join(denied)}")
        raise PermissionDeniedError(denied)

    for permission in OPTIONAL_PERMISSIONS:
        if not grants.get(permission):
            logger.warning(f"[Permissions] ⚠️ {permission} denied - remote dialing disabled")

    logger.info("[Permissions] ✅ Required permissions granted")
    return grants
