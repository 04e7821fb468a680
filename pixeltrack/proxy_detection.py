"""Proxy detection for mail-provider image proxies and client classification."""
import ipaddress
import re

# Apple Mail Privacy Protection and other proxy IP ranges
APPLE_IP_RANGES = [
    ipaddress.ip_network('17.0.0.0/8'),      # Apple's primary range
    ipaddress.ip_network('104.28.0.0/16'),   # Cloudflare (used by Apple)
]

GOOGLE_PROXY_RANGES = [
    ipaddress.ip_network('64.233.160.0/19'), # Google
    ipaddress.ip_network('66.102.0.0/20'),   # Google
    ipaddress.ip_network('66.249.64.0/19'),  # Googlebot / image proxy
    ipaddress.ip_network('72.14.192.0/18'),  # Google
    ipaddress.ip_network('74.125.0.0/16'),   # Google (includes image proxy)
    ipaddress.ip_network('209.85.128.0/17'), # Google
]

# Address prefixes the Gmail image proxy fetches from
GOOGLE_IMAGE_PROXY_PREFIXES = ("66.249.", "64.233.", "74.125.")
GOOGLE_IMAGE_PROXY_UA_TOKEN = "googleimageproxy"

# User-agent markers of known mail image proxies
PROXY_UA_TOKENS = (
    "googleimageproxy",
    "ggpht.com",
    "yahoomailproxy",
    "outlookimageproxy",
)

MOBILE_UA_TOKENS = ("iphone", "ipad", "android", "mobile")
DESKTOP_UA_TOKENS = ("windows nt", "macintosh", "mac os x", "x11", "linux", "cros")

_IPV4_RE = re.compile(r"\d{1,3}(?:\.\d{1,3}){3}")


def normalize_ip(ip_str: str | None) -> str:
    """Lowercase, strip the IPv4-mapped prefix and pull out a bare IPv4 if present."""
    raw = (ip_str or "").strip().lower()
    if not raw:
        return ""
    if raw.startswith("::ffff:"):
        raw = raw[7:]
    match = _IPV4_RE.search(raw)
    return match.group(0) if match else raw


def is_proxy_user_agent(user_agent: str | None) -> bool:
    """True when the user agent belongs to a mail provider's image proxy."""
    ua_lower = (user_agent or "").lower()
    return any(token in ua_lower for token in PROXY_UA_TOKENS)


def is_google_image_proxy_hit(user_agent: str | None, ip_str: str | None) -> bool:
    """Gmail image proxy: proxy agent string fetched from a Google proxy address."""
    if GOOGLE_IMAGE_PROXY_UA_TOKEN not in (user_agent or "").lower():
        return False
    return normalize_ip(ip_str).startswith(GOOGLE_IMAGE_PROXY_PREFIXES)


def detect_proxy_type(ip_str: str | None, user_agent: str = "") -> str | None:
    """
    Detect if a hit comes from a known email proxy service.

    Returns:
        'apple' - Apple Mail Privacy Protection
        'google' - Gmail image proxy
        'yahoo' / 'outlook' - other provider image proxies
        None - Real open (not a proxy)
    """
    ip_str = normalize_ip(ip_str)
    if ip_str:
        try:
            ip = ipaddress.ip_address(ip_str)

            # Check Apple ranges
            for network in APPLE_IP_RANGES:
                if ip in network:
                    return "apple"

            # Check Google ranges
            for network in GOOGLE_PROXY_RANGES:
                if ip in network:
                    return "google"
        except ValueError:
            pass

    # Also check user agent for proxy indicators
    if user_agent:
        ua_lower = user_agent.lower()
        if "googleimageproxy" in ua_lower or "ggpht.com" in ua_lower:
            return "google"
        if "yahoomailproxy" in ua_lower:
            return "yahoo"
        if "outlookimageproxy" in ua_lower:
            return "outlook"
        if "apple" in ua_lower and "mail" in ua_lower:
            return "apple"

    return None


def detect_device_type(user_agent: str | None) -> str:
    """Classify the fetching client as 'phone', 'computer' or 'other'."""
    ua_lower = (user_agent or "").lower()
    if not ua_lower or is_proxy_user_agent(ua_lower):
        return "other"
    if any(token in ua_lower for token in MOBILE_UA_TOKENS):
        return "phone"
    if any(token in ua_lower for token in DESKTOP_UA_TOKENS):
        return "computer"
    return "other"
