"""Heuristics for recognising CAPTCHA interstitials and block pages."""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from seocrawl.utils.captcha_solver import CaptchaType

# Markers that identify a challenge widget regardless of status code
HIGH_CONFIDENCE_INDICATORS = {
    CaptchaType.RECAPTCHA_V2: [
        "g-recaptcha",
        "www.google.com/recaptcha",
        "recaptcha/api.js",
        "grecaptcha.execute",
    ],
    CaptchaType.HCAPTCHA: [
        "h-captcha",
        "hcaptcha.com/1/api.js",
    ],
    CaptchaType.TURNSTILE: [
        "cf-turnstile",
        "challenges.cloudflare.com",
        "cf-challenge",
        "just a moment...</title>",
        "checking your browser before accessing",
    ],
    CaptchaType.IMAGE_CAPTCHA: [
        "our systems have detected unusual traffic",  # Google sorry page
        "please solve this captcha",
        "b_captcha",  # Bing challenge container
        "type the characters you see",
        "captcha-image",
    ],
}

# Weak signals; only meaningful on blocking status codes
GENERIC_INDICATORS = [
    "captcha",
    "please verify you are human",
    "prove you are not a robot",
    "robot or bot",
    "automated access",
    "unusual traffic",
    "you have been blocked",
    "your ip has been blocked",
    "security challenge",
    "too many requests",
    "rate limit exceeded",
    "access denied</title>",
]

BLOCKING_STATUS_CODES = {403, 429, 503}

URL_MARKERS = ("/sorry/", "captcha", "challenge")

SITEKEY_PATTERN = re.compile(r"""data-sitekey\s*=\s*["']([^"']+)["']""", re.IGNORECASE)


@dataclass
class CaptchaDetection:
    """Result of inspecting a response for a CAPTCHA."""
    is_captcha: bool = False
    captcha_type: Optional[CaptchaType] = None
    confidence: float = 0.0
    indicators: List[str] = field(default_factory=list)
    site_key: Optional[str] = None


def extract_site_key(html: str) -> Optional[str]:
    """Pull the data-sitekey attribute of a challenge widget, if present."""
    if not html:
        return None
    match = SITEKEY_PATTERN.search(html)
    return match.group(1) if match else None


def detect_captcha(status_code: int, html: str = "", url: str = "") -> CaptchaDetection:
    """Detect whether a response is a CAPTCHA challenge or bot block.

    Args:
        status_code: HTTP status code
        html: Response body
        url: Final response URL

    Returns:
        CaptchaDetection describing what was found
    """
    html_lower = html.lower() if html else ""
    url_lower = url.lower() if url else ""
    detection = CaptchaDetection()
    confidence = 0.0

    for captcha_type, patterns in HIGH_CONFIDENCE_INDICATORS.items():
        for pattern in patterns:
            if pattern in html_lower:
                detection.indicators.append(pattern)
                if detection.captcha_type is None:
                    detection.captcha_type = captcha_type
                confidence += 0.5

    if status_code in BLOCKING_STATUS_CODES:
        for indicator in GENERIC_INDICATORS:
            if indicator in html_lower:
                detection.indicators.append(indicator)
                confidence += 0.2

    for marker in URL_MARKERS:
        if marker in url_lower:
            detection.indicators.append(f"url:{marker}")
            confidence += 0.3

    if status_code == 429:
        detection.indicators.append("status:429")
        confidence = max(confidence, 0.7)
    elif status_code == 403:
        detection.indicators.append("status:403")
        confidence = max(confidence + 0.3, 0.5)

    detection.confidence = min(confidence, 1.0)
    detection.is_captcha = detection.confidence >= 0.5
    if detection.is_captcha:
        detection.site_key = extract_site_key(html)
        if detection.captcha_type is None:
            detection.captcha_type = CaptchaType.UNKNOWN

    return detection
