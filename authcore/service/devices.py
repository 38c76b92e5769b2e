from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Browser(str, Enum):
    EDGE = "Edge"
    OPERA = "Opera"
    CHROME = "Chrome"
    FIREFOX = "Firefox"
    SAFARI = "Safari"
    UNKNOWN = "Unknown"


class OperatingSystem(str, Enum):
    IOS = "iOS"
    ANDROID = "Android"
    WINDOWS = "Windows"
    MACOS = "macOS"
    LINUX = "Linux"
    UNKNOWN = "Unknown"


class FormFactor(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


@dataclass(frozen=True)
class DeviceClass:
    browser: Browser
    os: OperatingSystem
    form_factor: FormFactor

    @property
    def name(self) -> str:
        return f"{self.browser.value} on {self.os.value}"

    def as_dict(self) -> Dict[str, str]:
        return {
            "browser": self.browser.value,
            "os": self.os.value,
            "device_type": self.form_factor.value,
        }


UNKNOWN_DEVICE = DeviceClass(Browser.UNKNOWN, OperatingSystem.UNKNOWN, FormFactor.DESKTOP)


def _browser(ua: str) -> Browser:
    # Edge and Opera both carry "Chrome/"; Chrome carries "Safari/"
    if "edg/" in ua or "edge/" in ua or "edga/" in ua or "edgios/" in ua:
        return Browser.EDGE
    if "opr/" in ua or "opera" in ua:
        return Browser.OPERA
    if "firefox/" in ua or "fxios/" in ua:
        return Browser.FIREFOX
    if "chrome/" in ua or "crios/" in ua or "chromium/" in ua:
        return Browser.CHROME
    if "safari/" in ua:
        return Browser.SAFARI
    return Browser.UNKNOWN


def _operating_system(ua: str) -> OperatingSystem:
    # iOS agents say "like Mac OS X" and Android agents say "Linux"
    if "iphone" in ua or "ipad" in ua or "ipod" in ua:
        return OperatingSystem.IOS
    if "android" in ua:
        return OperatingSystem.ANDROID
    if "windows" in ua:
        return OperatingSystem.WINDOWS
    if "mac os" in ua or "macintosh" in ua:
        return OperatingSystem.MACOS
    if "linux" in ua or "x11" in ua or "cros " in ua:
        return OperatingSystem.LINUX
    return OperatingSystem.UNKNOWN


def _form_factor(ua: str) -> FormFactor:
    if "ipad" in ua or "tablet" in ua:
        return FormFactor.TABLET
    if "android" in ua and "mobile" not in ua:
        return FormFactor.TABLET
    if "mobile" in ua or "iphone" in ua or "ipod" in ua:
        return FormFactor.MOBILE
    return FormFactor.DESKTOP


def parse_device_info(user_agent: Optional[str]) -> DeviceClass:
    """Classify a raw User-Agent header into browser, OS family and form factor."""
    if not user_agent:
        return UNKNOWN_DEVICE
    ua = user_agent.lower()
    return DeviceClass(
        browser=_browser(ua),
        os=_operating_system(ua),
        form_factor=_form_factor(ua),
    )


def device_fingerprint(
    user_agent: Optional[str], declared: Optional[Dict[str, Any]] = None
) -> str:
    """Stable identifier for trusted-device matching.

    Built from the parsed classification, not the raw header, so a browser
    version bump does not invalidate trust; ``declared`` is whatever the
    client reports about itself (screen, timezone, ...).
    """
    material = {
        "device": parse_device_info(user_agent).as_dict(),
        "declared": declared or {},
    }
    encoded = json.dumps(material, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


__all__ = [
    "Browser",
    "OperatingSystem",
    "FormFactor",
    "DeviceClass",
    "UNKNOWN_DEVICE",
    "parse_device_info",
    "device_fingerprint",
]
