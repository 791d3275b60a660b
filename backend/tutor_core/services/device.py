"""Device and browser classification for inbound requests."""

import re
from dataclasses import dataclass
from typing import Optional, Protocol

DEVICE_TYPES = ("mobile", "tablet", "desktop")

# Tablet signatures share substrings with phone ones ("android", "mobile"
# in Kindle/Silk agents), so they must be tested first.
_TABLET_PATTERN = re.compile(
    r"ipad|tablet|kindle|silk/|playbook|nexus (7|9|10)|sm-t\d+|android(?!.*mobile)",
    re.IGNORECASE,
)
_MOBILE_PATTERN = re.compile(
    r"mobile|iphone|ipod|android|blackberry|bb10|windows phone|opera mini|iemobile|webos",
    re.IGNORECASE,
)

# Order matters: Edge and Opera agents also contain "chrome" and "safari".
_BROWSER_SIGNATURES = (
    ("Edge", re.compile(r"edg(e|a|ios)?/", re.IGNORECASE)),
    ("Opera", re.compile(r"opr/|opera", re.IGNORECASE)),
    ("Samsung Internet", re.compile(r"samsungbrowser/", re.IGNORECASE)),
    ("Firefox", re.compile(r"firefox/|fxios/", re.IGNORECASE)),
    ("Chrome", re.compile(r"chrome/|crios/", re.IGNORECASE)),
    ("Safari", re.compile(r"safari/", re.IGNORECASE)),
)


def classify_device(user_agent: Optional[str]) -> str:
    """Classify a raw user-agent string as ``tablet``, ``mobile`` or ``desktop``."""
    if not user_agent:
        return "desktop"
    if _TABLET_PATTERN.search(user_agent):
        return "tablet"
    if _MOBILE_PATTERN.search(user_agent):
        return "mobile"
    return "desktop"


def detect_browser(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    for name, pattern in _BROWSER_SIGNATURES:
        if pattern.search(user_agent):
            return name
    return "Other"


@dataclass(frozen=True)
class ClientContext:
    """Request metadata recorded with every audit row."""

    device_type: str = "desktop"
    browser_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class DeviceClassifier(Protocol):
    def classify(self, user_agent: Optional[str]) -> str:
        ...


class UserAgentDeviceClassifier:
    """Default classifier based on user-agent sniffing."""

    def classify(self, user_agent: Optional[str]) -> str:
        return classify_device(user_agent)


class DeviceContextResolver:
    """
    Build a ClientContext for a request.

    An explicit device hint supplied by the client wins over the classifier
    when it names a known device type.
    """

    def __init__(self, classifier: Optional[DeviceClassifier] = None):
        self._classifier = classifier or UserAgentDeviceClassifier()

    def resolve(
        self,
        user_agent: Optional[str],
        device_hint: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ClientContext:
        hint = (device_hint or "").strip().lower()
        device_type = hint if hint in DEVICE_TYPES else self._classifier.classify(user_agent)
        return ClientContext(
            device_type=device_type,
            browser_name=detect_browser(user_agent),
            user_agent=user_agent[:500] if user_agent else None,
            ip_address=ip_address,
        )
