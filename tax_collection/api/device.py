"""
Request device metadata for field visits
"""

import re
from typing import Optional

from fastapi import Request

from ..visits import DeviceInfo


_MOBILE = re.compile(r"android|webos|iphone|ipod|blackberry|iemobile|opera mini")
_TABLET = re.compile(r"ipad|android(?!.*mobile)|tablet")

_WINDOWS_VERSIONS = [
    ("windows nt 10", "Windows 10/11"),
    ("windows nt 6.3", "Windows 8.1"),
    ("windows nt 6.2", "Windows 8"),
    ("windows nt 6.1", "Windows 7"),
]


def detect_device_type(user_agent: Optional[str]) -> str:
    ua = (user_agent or "").lower()
    if _TABLET.search(ua):
        return "tablet"
    if _MOBILE.search(ua):
        return "mobile"
    return "desktop"


def detect_browser(user_agent: Optional[str]) -> str:
    ua = (user_agent or "").lower()
    if "edg/" in ua:
        return "Edge"
    if "opr/" in ua or "opera/" in ua:
        return "Opera"
    if "chrome/" in ua:
        return "Chrome"
    if "firefox/" in ua:
        return "Firefox"
    if "safari/" in ua:
        return "Safari"
    if "msie" in ua or "trident/" in ua:
        return "Internet Explorer"
    return "Unknown"


def detect_operating_system(user_agent: Optional[str]) -> str:
    ua = (user_agent or "").lower()
    if "windows nt" in ua:
        for marker, name in _WINDOWS_VERSIONS:
            if marker in ua:
                return name
        return "Windows"
    if "android" in ua:
        return "Android"
    if "iphone os" in ua or "ipad" in ua:
        return "iOS"
    if "mac os x" in ua or "macintosh" in ua:
        return "macOS"
    if "linux" in ua:
        return "Linux"
    return "Unknown"


def client_ip(request: Request) -> Optional[str]:
    """First forwarded address, else the socket peer"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def parse_device_info(request: Request) -> DeviceInfo:
    user_agent = request.headers.get("user-agent")
    return DeviceInfo(
        ip_address=client_ip(request),
        device_type=detect_device_type(user_agent),
        browser_name=detect_browser(user_agent),
        operating_system=detect_operating_system(user_agent),
        source="mobile" if request.headers.get("x-app-source") == "mobile" else "web"
    )
