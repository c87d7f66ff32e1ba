#!/usr/bin/env python3
"""
Call Bridge exceptions
Only errors that make a whole operation meaningless are raised past a component.
"""

from typing import Iterable, Optional


class CallBridgeError(Exception):
    """Base class for call bridge errors."""


class PermissionDeniedError(CallBridgeError):
    """Required device permissions were not granted."""

    def __init__(self, denied: Iterable[str]):
        self.denied = sorted(denied)
        super().__init__(
            f"Permissions denied: {', '.join(self.denied)}. "
            "Phone state and storage access are required."
        )


class UploadError(CallBridgeError):
    """One upload try failed (transport error or non-2xx response)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
