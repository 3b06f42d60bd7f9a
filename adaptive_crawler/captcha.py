"""CAPTCHA solve hooks for the stealth executor.

No solving logic lives here. A solver either gives up (``skip``), gives a
human time to solve in a headed browser (``manual``), or hands the challenge
to an external solving service and injects the returned token.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import requests
import structlog

from .models import CaptchaChallenge

logger = structlog.get_logger(__name__)

TWOCAPTCHA_SUBMIT_URL = "http://2captcha.com/in.php"
TWOCAPTCHA_RESULT_URL = "http://2captcha.com/res.php"

_TOKEN_FIELDS = {
    "recaptcha": "#g-recaptcha-response",
    "hcaptcha": "[name=h-captcha-response]",
}


class CaptchaSolver(ABC):
    name = "base"

    @abstractmethod
    def solve(self, page: Any, challenge: CaptchaChallenge, page_url: str) -> bool:
        """Try to clear ``challenge`` on the live ``page``; True when solved."""


class SkipSolver(CaptchaSolver):
    name = "skip"

    def solve(self, page: Any, challenge: CaptchaChallenge, page_url: str) -> bool:
        logger.info("captcha_skipped", type=challenge.type, url=page_url)
        return False


class ManualSolver(CaptchaSolver):
    """Waits a fixed window for someone to solve the challenge by hand."""

    name = "manual"

    def __init__(self, wait_seconds: float = 30.0) -> None:
        self._wait_seconds = wait_seconds

    def solve(self, page: Any, challenge: CaptchaChallenge, page_url: str) -> bool:
        logger.info("captcha_manual_wait", type=challenge.type, url=page_url, wait_seconds=self._wait_seconds)
        page.wait_for_timeout(self._wait_seconds * 1000)
        return True


class ExternalCaptchaSolver(CaptchaSolver):
    """2captcha-compatible solving service client."""

    name = "external"

    def __init__(
        self,
        api_key: str,
        session: Optional[requests.Session] = None,
        poll_interval: float = 5.0,
        max_polls: int = 30,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_key = api_key
        self._session = session or requests.Session()
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._sleep = sleep

    def request_token(self, challenge: CaptchaChallenge, page_url: str) -> Optional[str]:
        """Submit the challenge and poll until the service returns a token."""
        if challenge.type not in _TOKEN_FIELDS or not challenge.site_key:
            logger.info("captcha_unsupported", type=challenge.type)
            return None
        method = "userrecaptcha" if challenge.type == "recaptcha" else "hcaptcha"
        key_field = "googlekey" if challenge.type == "recaptcha" else "sitekey"
        try:
            submitted = self._session.post(
                TWOCAPTCHA_SUBMIT_URL,
                data={"key": self._api_key, "method": method, key_field: challenge.site_key, "pageurl": page_url, "json": 1},
                timeout=30,
            ).json()
            if submitted.get("status") != 1:
                logger.warning("captcha_submit_failed", response=submitted)
                return None
            captcha_id = submitted.get("request")
            for _ in range(self._max_polls):
                self._sleep(self._poll_interval)
                result = self._session.get(
                    TWOCAPTCHA_RESULT_URL,
                    params={"key": self._api_key, "action": "get", "id": captcha_id, "json": 1},
                    timeout=30,
                ).json()
                if result.get("status") == 1:
                    return result.get("request")
                if result.get("request") != "CAPCHA_NOT_READY":
                    logger.warning("captcha_service_error", response=result)
                    return None
        except (requests.RequestException, ValueError) as exc:
            logger.warning("captcha_service_unreachable", error=str(exc))
            return None
        logger.warning("captcha_service_timeout", polls=self._max_polls)
        return None

    def solve(self, page: Any, challenge: CaptchaChallenge, page_url: str) -> bool:
        token = self.request_token(challenge, page_url)
        if not token:
            return False
        selector = _TOKEN_FIELDS[challenge.type]
        page.evaluate(
            "([selector, token]) => { const el = document.querySelector(selector);"
            " if (el) { el.value = token; el.style.display = 'block'; } }",
            [selector, token],
        )
        logger.info("captcha_token_injected", type=challenge.type)
        return True


def get_solver(name: Optional[str], api_key: Optional[str] = None) -> CaptchaSolver:
    name = (name or "skip").lower()
    if name == "manual":
        return ManualSolver()
    if name in ("2captcha", "anticaptcha", "external"):
        if not api_key:
            logger.warning("captcha_api_key_missing", solver=name)
            return SkipSolver()
        return ExternalCaptchaSolver(api_key)
    return SkipSolver()
