from __future__ import annotations

import ipaddress
from typing import Mapping, Optional, Sequence, Tuple

from chronos.storage.models import DeviceInfo

MAX_USER_AGENT_LENGTH = 500


def browser_name(user_agent: str) -> str:
    ua = user_agent.lower()
    if "edg/" in ua:
        return "Edge"
    if "opr/" in ua or "opera" in ua:
        return "Opera"
    if "firefox/" in ua or "fxios/" in ua:
        return "Firefox"
    if "chrome/" in ua or "crios/" in ua:
        return "Chrome"
    if "safari/" in ua:
        return "Safari"
    if "msie" in ua or "trident/" in ua:
        return "IE"
    return "Unknown Browser"


def os_name(user_agent: str) -> str:
    # mobile platforms first: their agents also mention "linux" / "mac os x"
    ua = user_agent.lower()
    if "android" in ua:
        return "Android"
    if "iphone" in ua or "ipad" in ua:
        return "iOS"
    if "windows" in ua:
        return "Windows"
    if "mac os" in ua or "macintosh" in ua:
        return "macOS"
    if "linux" in ua or "x11" in ua:
        return "Linux"
    return "Unknown OS"


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    if not user_agent:
        return DeviceInfo()
    ua = user_agent.lower()
    if "ipad" in ua or "tablet" in ua:
        device_type = "tablet"
    elif "mobile" in ua or "android" in ua or "iphone" in ua:
        device_type = "mobile"
    elif "smart-tv" in ua or "smarttv" in ua or " tv" in ua:
        device_type = "tv"
    elif "watch" in ua:
        device_type = "watch"
    elif any(marker in ua for marker in ("windows", "macintosh", "mac os", "linux", "x11")):
        device_type = "desktop"
    else:
        device_type = "unknown"
    return DeviceInfo(
        type=device_type,
        title=f"{browser_name(user_agent)} on {os_name(user_agent)}",
        user_agent=user_agent[:MAX_USER_AGENT_LENGTH],
    )


def _is_trusted(addr: str, trusted_proxies: Sequence[str]) -> bool:
    """Match an address against trusted proxy IPs or CIDR ranges."""
    try:
        ip = ipaddress.ip_address(addr)
    except ValueError:
        return addr in trusted_proxies
    for entry in trusted_proxies:
        try:
            if ip in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def request_info(
    headers: Mapping[str, str],
    client_host: Optional[str],
    trusted_proxies: Sequence[str] = (),
) -> Tuple[Optional[str], DeviceInfo]:
    """Client IP and device for a request.

    X-Forwarded-For is only read when the socket peer is a trusted proxy.
    The chain is walked right to left and the first hop that is not itself
    a trusted proxy is the client. Anyone else gets their socket address,
    whatever header they send.
    """
    ip_addr = client_host
    forwarded = headers.get("x-forwarded-for")
    if forwarded and client_host and _is_trusted(client_host, trusted_proxies):
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            ip_addr = hop
            if not _is_trusted(hop, trusted_proxies):
                break
    return ip_addr or None, parse_user_agent(headers.get("user-agent"))
