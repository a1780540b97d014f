"""Queries for the system permissions a dictation session needs."""

from __future__ import annotations

import logging
import platform
from typing import Iterable, Optional, Protocol, Tuple

MICROPHONE = "microphone"
ACCESSIBILITY = "accessibility"
SCREEN_RECORDING = "screen_recording"

REQUIRED_PERMISSIONS: Tuple[str, ...] = (MICROPHONE, ACCESSIBILITY)


class PermissionChecker(Protocol):
    def is_granted(self, permission: str) -> bool:
        """Return True when ``permission`` is currently granted."""


def first_missing(checker: PermissionChecker, permissions: Iterable[str]) -> Optional[str]:
    for permission in permissions:
        if not checker.is_granted(permission):
            return permission
    return None


class MacPermissions:
    """Read permission state from macOS privacy frameworks."""

    def __init__(self) -> None:
        if platform.system() != "Darwin":  # pragma: no cover - platform guard
            raise RuntimeError("macOS permission checks are only available on macOS.")

    def is_granted(self, permission: str) -> bool:  # pragma: no cover - platform APIs
        try:
            if permission == ACCESSIBILITY:
                from ApplicationServices import AXIsProcessTrusted  # type: ignore

                return bool(AXIsProcessTrusted())
            if permission == SCREEN_RECORDING:
                from Quartz import CGPreflightScreenCaptureAccess  # type: ignore

                return bool(CGPreflightScreenCaptureAccess())
            if permission == MICROPHONE:
                from AVFoundation import (  # type: ignore
                    AVAuthorizationStatusAuthorized,
                    AVAuthorizationStatusNotDetermined,
                    AVCaptureDevice,
                    AVMediaTypeAudio,
                )

                status = AVCaptureDevice.authorizationStatusForMediaType_(AVMediaTypeAudio)
                # Not yet asked: the first capture triggers the system prompt.
                return status in (AVAuthorizationStatusAuthorized, AVAuthorizationStatusNotDetermined)
        except ImportError as exc:
            raise RuntimeError(
                "The `pyobjc` packages are required for permission checks. Install freeflow[mac]."
            ) from exc
        logging.debug("Unknown permission %s treated as granted", permission)
        return True


class GrantedPermissions:
    """Checker for platforms without a permission model."""

    def is_granted(self, permission: str) -> bool:
        return True


def default_checker() -> PermissionChecker:
    if platform.system() == "Darwin":
        return MacPermissions()
    return GrantedPermissions()
