"""Device, page and campaign context captured when a session starts."""

import hashlib
import re
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import parse_qs, urlparse

UTM_KEYS = ("source", "medium", "campaign", "term", "content")

CLICK_ID_PARAMS = ("fbclid", "gclid", "msclkid", "ttclid", "twclid", "li_mc", "yclid", "igshid")


@dataclass
class DeviceInfo:
    """Browser/OS details derived from the user agent."""

    user_agent: str = ""
    device_type: str = "desktop"
    browser: str = "Unknown"
    browser_version: str = "Unknown"
    operating_system: str = "Unknown"
    os_version: str = "Unknown"
    screen_resolution: str = ""
    timezone: str = "UTC"
    language: str = "en"

    def to_wire(self) -> Dict[str, str]:
        return {
            "userAgent": self.user_agent,
            "deviceType": self.device_type,
            "browser": self.browser,
            "browserVersion": self.browser_version,
            "operatingSystem": self.operating_system,
            "osVersion": self.os_version,
            "screenResolution": self.screen_resolution,
            "timezone": self.timezone,
            "language": self.language,
        }


@dataclass
class IPLocation:
    """Approximate geo position supplied by the host (e.g. an IP lookup)."""

    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def to_wire(self) -> Dict[str, object]:
        return {
            "country": self.country,
            "region": self.region,
            "city": self.city,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


@dataclass
class PageInfo:
    """Where the session landed and how it got there."""

    url: str = ""
    title: str = ""
    referrer: str = ""
    pathname: str = ""
    utm: Dict[str, str] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, object]:
        data: Dict[str, object] = {
            "url": self.url,
            "title": self.title,
            "referrer": self.referrer or "N/A",
            "pathname": self.pathname,
        }
        for key in UTM_KEYS:
            if key in self.utm:
                data[f"utm{key.capitalize()}"] = self.utm[key]
        for click_id in CLICK_ID_PARAMS:
            if click_id in self.utm:
                data[click_id] = self.utm[click_id]
        data["utmParams"] = {k: self.utm[k] for k in UTM_KEYS if k in self.utm}
        return data


def detect_device_type(user_agent: str) -> str:
    if re.search(r"Mobile|Android|iPhone|iPad", user_agent):
        return "tablet" if "iPad" in user_agent else "mobile"
    return "desktop"


def detect_browser(user_agent: str) -> str:
    # Edge and Chrome both advertise "Chrome"; check the more specific token first
    if "Edg" in user_agent:
        return "Edge"
    if "Chrome" in user_agent:
        return "Chrome"
    if "Firefox" in user_agent:
        return "Firefox"
    if "Safari" in user_agent:
        return "Safari"
    return "Unknown"


def detect_browser_version(user_agent: str) -> str:
    match = re.search(r"(Edg|Chrome|Firefox|Version)/(\d+)", user_agent)
    return match.group(2) if match else "Unknown"


def detect_os(user_agent: str) -> str:
    if "Windows" in user_agent:
        return "Windows"
    if "Android" in user_agent:
        return "Android"
    if "iPhone" in user_agent or "iPad" in user_agent:
        return "iOS"
    if "Mac" in user_agent:
        return "macOS"
    if "Linux" in user_agent:
        return "Linux"
    return "Unknown"


def detect_os_version(user_agent: str) -> str:
    if "Windows NT 10.0" in user_agent:
        return "10"
    if "Windows NT 6.3" in user_agent:
        return "8.1"
    match = re.search(r"Mac OS X (\d+)_(\d+)", user_agent)
    if match:
        return f"{match.group(1)}.{match.group(2)}"
    match = re.search(r"Android (\d+(?:\.\d+)?)", user_agent)
    if match:
        return match.group(1)
    return "Unknown"


def get_device_info(user_agent: str = "", screen_resolution: str = "",
                    timezone: str = "UTC", language: str = "en") -> DeviceInfo:
    return DeviceInfo(
        user_agent=user_agent,
        device_type=detect_device_type(user_agent),
        browser=detect_browser(user_agent),
        browser_version=detect_browser_version(user_agent),
        operating_system=detect_os(user_agent),
        os_version=detect_os_version(user_agent),
        screen_resolution=screen_resolution,
        timezone=timezone,
        language=language,
    )


def parse_utm_params(url: str) -> Dict[str, str]:
    """Extract utm_* parameters and ad click ids from a URL."""
    if not url:
        return {}
    try:
        query = parse_qs(urlparse(url).query)
    except ValueError:
        return {}

    params: Dict[str, str] = {}
    for key in UTM_KEYS:
        values = query.get(f"utm_{key}")
        if values and values[0]:
            params[key] = values[0]
    for click_id in CLICK_ID_PARAMS:
        values = query.get(click_id)
        if values and values[0]:
            params[click_id] = values[0]
    return params


def get_page_info(url: str, title: str = "", referrer: str = "") -> PageInfo:
    return PageInfo(
        url=url,
        title=title,
        referrer=referrer,
        pathname=urlparse(url).path if url else "",
        utm=parse_utm_params(url),
    )


def generate_fingerprint(device: DeviceInfo, extra: Optional[str] = None) -> str:
    """Stable, non-reversible digest of the device characteristics."""
    parts = [
        device.user_agent,
        device.screen_resolution,
        device.timezone,
        device.language,
        extra or "",
    ]
    return hashlib.sha256("|".join(parts).encode()).hexdigest()[:32]
