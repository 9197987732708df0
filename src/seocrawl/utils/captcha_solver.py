"""
CAPTCHA solving seam for the fetch pipeline.

Solving is optional. NoopCaptchaSolver is the default and fails fast; the
pipeline rotates to another egress whatever the outcome. A solving service
plugs in by subclassing BaseCaptchaSolver and implementing submit() and
poll().
"""
import asyncio
import logging
import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from seocrawl.config import settings
from seocrawl.constants import CAPTCHA_POLL_INTERVAL_SECONDS, CAPTCHA_SOLVE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class CaptchaType(Enum):
    """Kinds of challenge the detector recognises."""
    RECAPTCHA_V2 = "recaptcha_v2"
    RECAPTCHA_V2_INVISIBLE = "recaptcha_v2_invisible"
    RECAPTCHA_V3 = "recaptcha_v3"
    HCAPTCHA = "hcaptcha"
    TURNSTILE = "turnstile"  # Cloudflare
    IMAGE_CAPTCHA = "image_captcha"
    UNKNOWN = "unknown"


class SolverStatus(Enum):
    PROCESSING = "processing"
    SOLVED = "solved"
    FAILED = "failed"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"


@dataclass
class SolveResult:
    """Outcome of one solve attempt."""
    status: SolverStatus
    captcha_type: CaptchaType
    token: str | None = None
    task_id: str | None = None
    elapsed_seconds: float = 0.0
    error: str | None = None

    @property
    def solved(self) -> bool:
        return self.status == SolverStatus.SOLVED and bool(self.token)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "captcha_type": self.captcha_type.value,
            "token": self.token,
            "task_id": self.task_id,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "error": self.error,
        }


class BaseCaptchaSolver(ABC):
    """
    Submit-then-poll solver contract.

    solve() never raises for service problems: errors, timeouts and
    unsupported challenge types all come back as a SolveResult.
    """

    service_name = "base"
    supported_types: tuple[CaptchaType, ...] = ()

    def __init__(
        self,
        timeout_seconds: float = CAPTCHA_SOLVE_TIMEOUT_SECONDS,
        poll_interval: float = CAPTCHA_POLL_INTERVAL_SECONDS,
    ):
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval
        self.attempts = 0
        self.solved = 0
        self.failed = 0

    @abstractmethod
    async def submit(self, captcha_type: CaptchaType, site_key: str | None, page_url: str) -> str:
        """Hand a challenge to the service and return its task id."""

    @abstractmethod
    async def poll(self, task_id: str, captcha_type: CaptchaType) -> SolveResult:
        """Check a submitted task; PROCESSING means ask again later."""

    async def solve(
        self,
        site_key: str | None,
        page_url: str,
        captcha_type: CaptchaType = CaptchaType.RECAPTCHA_V2,
    ) -> SolveResult:
        if captcha_type not in self.supported_types:
            return SolveResult(
                status=SolverStatus.UNSUPPORTED,
                captcha_type=captcha_type,
                error=f"{self.service_name} cannot solve {captcha_type.value}",
            )
        if not site_key and captcha_type != CaptchaType.IMAGE_CAPTCHA:
            return SolveResult(
                status=SolverStatus.FAILED,
                captcha_type=captcha_type,
                error="No sitekey on page",
            )

        self.attempts += 1
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            task_id = await self.submit(captcha_type, site_key, page_url)
            result = await asyncio.wait_for(
                self._wait_for_answer(task_id, captcha_type), self.timeout_seconds
            )
        except asyncio.TimeoutError:
            result = SolveResult(
                status=SolverStatus.TIMEOUT,
                captcha_type=captcha_type,
                error=f"No answer within {self.timeout_seconds}s",
            )
        except (ValueError, RuntimeError) as e:
            logger.warning(f"{self.service_name} failed on {page_url}: {e}")
            result = SolveResult(status=SolverStatus.FAILED, captcha_type=captcha_type, error=str(e))

        result.elapsed_seconds = loop.time() - started
        if result.solved:
            self.solved += 1
            logger.info(f"{self.service_name} solved {captcha_type.value} in {result.elapsed_seconds:.1f}s")
        else:
            self.failed += 1
        return result

    async def _wait_for_answer(self, task_id: str, captcha_type: CaptchaType) -> SolveResult:
        while True:
            await asyncio.sleep(self.poll_interval)
            result = await self.poll(task_id, captcha_type)
            if result.status != SolverStatus.PROCESSING:
                return result

    def get_stats(self) -> dict[str, Any]:
        return {
            "service": self.service_name,
            "attempts": self.attempts,
            "solved": self.solved,
            "failed": self.failed,
            "success_rate": self.solved / self.attempts if self.attempts else 0.0,
        }


class NoopCaptchaSolver(BaseCaptchaSolver):
    """Default solver: supports nothing, so every solve is UNSUPPORTED."""

    service_name = "none"

    async def submit(self, captcha_type, site_key, page_url) -> str:
        raise RuntimeError("No CAPTCHA solver configured")

    async def poll(self, task_id, captcha_type) -> SolveResult:
        raise RuntimeError("No CAPTCHA solver configured")


class MockCaptchaSolver(BaseCaptchaSolver):
    """
    In-process solver for tests and dry runs.

    Answers after ``solve_delay`` seconds, failing with probability
    ``fail_rate``.
    """

    service_name = "mock"
    supported_types = tuple(CaptchaType)

    def __init__(
        self,
        solve_delay: float = 0.0,
        fail_rate: float = 0.0,
        poll_interval: float = 0.01,
        timeout_seconds: float = 30,
    ):
        super().__init__(timeout_seconds=timeout_seconds, poll_interval=poll_interval)
        self.solve_delay = solve_delay
        self.fail_rate = fail_rate
        self._submitted: dict[str, float] = {}

    async def submit(self, captcha_type, site_key, page_url) -> str:
        task_id = uuid.uuid4().hex
        self._submitted[task_id] = asyncio.get_running_loop().time()
        return task_id

    async def poll(self, task_id, captcha_type) -> SolveResult:
        waited = asyncio.get_running_loop().time() - self._submitted[task_id]
        if waited < self.solve_delay:
            return SolveResult(status=SolverStatus.PROCESSING, captcha_type=captcha_type, task_id=task_id)

        del self._submitted[task_id]
        if random.random() < self.fail_rate:
            return SolveResult(
                status=SolverStatus.FAILED,
                captcha_type=captcha_type,
                task_id=task_id,
                error="Simulated failure",
            )
        return SolveResult(
            status=SolverStatus.SOLVED,
            captcha_type=captcha_type,
            token=f"mock-token-{task_id[:8]}",
            task_id=task_id,
        )


def get_solver(service: str | None = None, **kwargs) -> BaseCaptchaSolver:
    """
    Build the solver named by ``service`` or the CAPTCHA_SERVICE setting.

    Only 'none' and 'mock' ship with the crawler; anything else is a
    ValueError.
    """
    service = (service or settings.CAPTCHA_SERVICE or "none").lower()
    if service == "none":
        return NoopCaptchaSolver(**kwargs)
    if service == "mock":
        return MockCaptchaSolver(**kwargs)
    raise ValueError(f"Unknown solver service: {service}")
