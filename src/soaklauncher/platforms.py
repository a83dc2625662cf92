"""Classification of target platform identifiers."""
from enum import Enum


class Platform(str, Enum):
    """Remote execution environment family."""

    POSIX = "posix"
    WINDOWS = "windows"


_WINDOWS_MARKERS = ("windows-", "-windows", "-win-")


def classify_platform(identifier: str) -> Platform:
    """
    Classify an image family name such as ``debian-11`` or ``windows-2022``.

    Unrecognized or empty identifiers are POSIX.
    """
    normalized = (identifier or "").strip().lower()
    if normalized.startswith("windows") or normalized.startswith("win-"):
        return Platform.WINDOWS
    if any(marker in normalized for marker in _WINDOWS_MARKERS):
        return Platform.WINDOWS
    return Platform.POSIX
