from __future__ import annotations

import base64
import threading
from typing import Any, Dict, Protocol

import requests
import structlog

from .models import AuthConfig, AuthResult, FetchOptions

logger = structlog.get_logger(__name__)


class AuthenticationHandler(Protocol):
    def authenticate(self, session_ctx: Any, config: AuthConfig, domain: str) -> AuthResult:
        ...

    def apply_stored(self, options: FetchOptions, domain: str) -> bool:
        ...


class DefaultAuthenticationHandler:
    """basic / bearer / cookie / form login, remembered per domain.

    ``session_ctx`` is a ``requests.Session`` used for form logins; a fresh
    one is created when the caller passes None.
    """

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout
        self._lock = threading.Lock()
        self._stored: Dict[str, AuthResult] = {}

    def authenticate(self, session_ctx: Any, config: AuthConfig, domain: str) -> AuthResult:
        kind = (config.type or "none").lower()
        if kind == "none":
            result = AuthResult(success=True)
        elif kind == "basic":
            result = self._basic(config)
        elif kind == "bearer":
            result = self._bearer(config)
        elif kind == "cookie":
            result = self._cookie(config)
        elif kind == "form":
            result = self._form(session_ctx or requests.Session(), config)
        else:
            result = AuthResult(success=False, error=f"Unsupported authentication type: {config.type}")

        if result.success:
            with self._lock:
                self._stored[domain] = result
            logger.info("auth_succeeded", domain=domain, type=kind)
        else:
            logger.warning("auth_failed", domain=domain, type=kind, error=result.error)
        return result

    def apply_stored(self, options: FetchOptions, domain: str) -> bool:
        with self._lock:
            stored = self._stored.get(domain)
        if stored is None:
            return False
        options.headers.update(stored.headers)
        options.cookies.update(stored.cookies)
        return True

    def forget(self, domain: str) -> None:
        with self._lock:
            self._stored.pop(domain, None)

    # ------------------------------------------------------------ methods

    @staticmethod
    def _basic(config: AuthConfig) -> AuthResult:
        if not config.username or config.password is None:
            return AuthResult(success=False, error="Basic auth requires username and password")
        token = base64.b64encode(f"{config.username}:{config.password}".encode("utf-8")).decode("ascii")
        return AuthResult(success=True, headers={"Authorization": f"Basic {token}"})

    @staticmethod
    def _bearer(config: AuthConfig) -> AuthResult:
        if not config.token:
            return AuthResult(success=False, error="Bearer auth requires a token")
        return AuthResult(success=True, headers={"Authorization": f"Bearer {config.token}"})

    @staticmethod
    def _cookie(config: AuthConfig) -> AuthResult:
        if not config.cookies:
            return AuthResult(success=False, error="Cookie auth requires cookies")
        return AuthResult(success=True, cookies=dict(config.cookies))

    def _form(self, session: requests.Session, config: AuthConfig) -> AuthResult:
        if not config.login_url or not config.username or config.password is None:
            return AuthResult(success=False, error="Form auth requires login_url, username and password")
        payload = {config.username_field: config.username, config.password_field: config.password}
        try:
            resp = session.post(config.login_url, data=payload, timeout=self._timeout, allow_redirects=True)
        except requests.RequestException as exc:
            return AuthResult(success=False, error=f"Login request failed: {exc}")
        if resp.status_code >= 400:
            return AuthResult(success=False, error=f"Login failed (HTTP {resp.status_code})")
        if config.success_indicator and config.success_indicator not in (resp.text or ""):
            return AuthResult(success=False, error="Login success indicator not found")
        cookies = requests.utils.dict_from_cookiejar(session.cookies)
        return AuthResult(success=True, cookies=cookies)
