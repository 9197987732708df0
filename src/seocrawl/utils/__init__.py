"""
Utilities Package.

Provides browser-like request headers, CAPTCHA detection and solving, and
per-domain session affinity for the fetch pipeline.
"""

from .browser_headers import build_headers, random_user_agent
from .captcha_detector import CaptchaDetection, detect_captcha
from .captcha_solver import (
    BaseCaptchaSolver,
    CaptchaType,
    MockCaptchaSolver,
    NoopCaptchaSolver,
    SolveResult,
    SolverStatus,
    get_solver,
)
from .session_manager import SessionData, SessionManager

__all__ = [
    # Headers
    "build_headers",
    "random_user_agent",
    # CAPTCHA
    "CaptchaDetection",
    "detect_captcha",
    "BaseCaptchaSolver",
    "CaptchaType",
    "MockCaptchaSolver",
    "NoopCaptchaSolver",
    "SolveResult",
    "SolverStatus",
    "get_solver",
    # Sessions
    "SessionData",
    "SessionManager",
]
