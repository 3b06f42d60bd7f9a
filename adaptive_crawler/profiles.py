"""Domain Profile Store and strategy selection.

A profile is the learned record of how hard a site is to fetch and how well
each fetch method has worked on it. The store is constructed explicitly by
the service root and shared by every scrape and crawl session in the process.

Concurrency: every read and write of a domain happens under that domain's
lock; readers always receive deep copies, so a profile can never be observed
half-updated.
"""

from __future__ import annotations

import copy
import json
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from .errors import ProfileImportError
from .models import (
    DIFFICULTY_ORDER,
    Difficulty,
    DomainProfile,
    FetchMethod,
    ScrapingStrategy,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Cheapest first; also the tie-break order.
METHOD_ORDER: Tuple[FetchMethod, ...] = (FetchMethod.STATIC, FetchMethod.DYNAMIC, FetchMethod.STEALTH)

LEARNED_MIN_ATTEMPTS = 5
LEARNED_MIN_RATE = 0.7
HEURISTIC_CONFIDENCE_CAP = 95

BASE_SCORES: Dict[FetchMethod, int] = {
    FetchMethod.STATIC: 70,
    FetchMethod.DYNAMIC: 50,
    FetchMethod.STEALTH: 30,
}

# (characteristic attribute, {method: delta})
CHARACTERISTIC_ADJUSTMENTS: Tuple[Tuple[str, Dict[FetchMethod, int]], ...] = (
    ("has_anti_bot", {FetchMethod.STATIC: -40, FetchMethod.DYNAMIC: -20, FetchMethod.STEALTH: 30}),
    ("requires_js", {FetchMethod.STATIC: -30, FetchMethod.DYNAMIC: 20, FetchMethod.STEALTH: 10}),
    ("has_captcha", {FetchMethod.STATIC: -50, FetchMethod.DYNAMIC: -30, FetchMethod.STEALTH: 40}),
    ("has_rate_limit", {FetchMethod.STATIC: -20, FetchMethod.DYNAMIC: -10, FetchMethod.STEALTH: 20}),
)

# (substrings of the domain, {method: delta})
DOMAIN_HINTS: Tuple[Tuple[Tuple[str, ...], Dict[FetchMethod, int]], ...] = (
    (("cloudflare", "ddos-guard"), {FetchMethod.STEALTH: 30, FetchMethod.STATIC: -30}),
    (("spa", "react", "angular"), {FetchMethod.DYNAMIC: 20, FetchMethod.STATIC: -20}),
)

# error-text fragments -> characteristic flag
ERROR_PATTERNS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("blocked", "forbidden", "403", "access denied"), "has_anti_bot"),
    (("captcha",), "has_captcha"),
    (("rate limit", "too many", "429"), "has_rate_limit"),
    (("timeout", "timed out", "javascript"), "requires_js"),
)

BASE_ESTIMATED_SECONDS: Dict[FetchMethod, float] = {
    FetchMethod.STATIC: 2.0,
    FetchMethod.DYNAMIC: 8.0,
    FetchMethod.STEALTH: 20.0,
}


def method_options(method: FetchMethod, profile: DomainProfile) -> Dict[str, Any]:
    """Executor options tuned to what is known about the site."""
    chars = profile.characteristics
    if method == FetchMethod.STATIC:
        return {
            "timeout": 45.0 if chars.has_rate_limit else 30.0,
            "impersonate": "chrome120" if chars.has_anti_bot else None,
        }
    if method == FetchMethod.DYNAMIC:
        return {
            "timeout": 60.0 if chars.has_rate_limit else 30.0,
            "settle_delay": 1.0 if chars.requires_js else 0.5,
            "block_images": True,
        }
    return {
        "timeout": 90.0 if chars.has_rate_limit else 45.0,
        "stealth_level": "maximum" if chars.has_anti_bot else "advanced",
        "human_behavior": True,
        "session_persistence": True,
        "rate_limit_per_minute": 5 if chars.has_rate_limit else None,
    }


def _estimated_time(method: FetchMethod, profile: DomainProfile) -> float:
    base = BASE_ESTIMATED_SECONDS[method]
    return base * 1.5 if profile.characteristics.has_rate_limit else base


def _difficulty_for_flags(count: int) -> Difficulty:
    return DIFFICULTY_ORDER[min(count, len(DIFFICULTY_ORDER) - 1)]


def _max_difficulty(a: Difficulty, b: Difficulty) -> Difficulty:
    return a if DIFFICULTY_ORDER.index(a) >= DIFFICULTY_ORDER.index(b) else b


def normalize_domain(domain: str) -> str:
    return domain.strip().lower().rstrip(".")


class DomainProfileStore:
    """In-memory, per-domain-locked store of DomainProfile records."""

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._profiles: Dict[str, DomainProfile] = {}
        self._locks: Dict[str, threading.Lock] = {}

    # ------------------------------------------------------------ internals

    def _lock_for(self, domain: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(domain)
            if lock is None:
                lock = self._locks[domain] = threading.Lock()
            return lock

    def _get_or_create(self, domain: str) -> DomainProfile:
        # Caller holds the domain lock.
        with self._registry_lock:
            profile = self._profiles.get(domain)
            if profile is None:
                profile = self._profiles[domain] = DomainProfile(domain=domain)
                logger.debug("profile_created", domain=domain)
            return profile

    # ------------------------------------------------------------ reads

    def get(self, domain: str) -> Optional[DomainProfile]:
        domain = normalize_domain(domain)
        with self._lock_for(domain):
            with self._registry_lock:
                profile = self._profiles.get(domain)
            return copy.deepcopy(profile) if profile else None

    def snapshot(self, domain: str) -> DomainProfile:
        """Copy of the domain's profile, creating it lazily."""
        domain = normalize_domain(domain)
        with self._lock_for(domain):
            return copy.deepcopy(self._get_or_create(domain))

    def all_profiles(self) -> List[DomainProfile]:
        with self._registry_lock:
            domains = list(self._profiles)
        profiles = [self.get(d) for d in domains]
        return [p for p in profiles if p is not None]

    def success_rate_report(self) -> List[Dict[str, Any]]:
        return [
            {
                "domain": p.domain,
                "rates": {m.value: round(r, 4) for m, r in p.success_rates.items()},
                "difficulty": p.characteristics.difficulty.value,
                "total_attempts": p.total_attempts,
                "optimal": p.optimal_strategy.method.value,
            }
            for p in self.all_profiles()
        ]

    # ------------------------------------------------------------ selection

    def select_strategy(self, domain: str, override: Optional[FetchMethod] = None) -> ScrapingStrategy:
        profile = self.snapshot(domain)
        if override is not None:
            method = FetchMethod(override)
            return ScrapingStrategy(
                method=method,
                confidence=100,
                reasons=[f"Forced method: {method.value}"],
                estimated_time=_estimated_time(method, profile),
                options=method_options(method, profile),
            )

        if profile.total_attempts > LEARNED_MIN_ATTEMPTS:
            best = max(METHOD_ORDER, key=lambda m: (profile.success_rates[m], METHOD_ORDER.index(m)))
            rate = profile.success_rates[best]
            if rate > LEARNED_MIN_RATE:
                return ScrapingStrategy(
                    method=best,
                    confidence=round(rate * 100),
                    reasons=[f"Learned success rate {rate:.2f} over {profile.total_attempts} attempts"],
                    estimated_time=_estimated_time(best, profile),
                    options=method_options(best, profile),
                )

        return self._heuristic_strategy(profile)

    def _heuristic_strategy(self, profile: DomainProfile) -> ScrapingStrategy:
        scores = dict(BASE_SCORES)
        reasons: List[str] = []
        chars = profile.characteristics
        for attr, deltas in CHARACTERISTIC_ADJUSTMENTS:
            if getattr(chars, attr):
                reasons.append(f"{attr} observed")
                for method, delta in deltas.items():
                    scores[method] += delta

        domain = profile.domain.lower()
        for needles, deltas in DOMAIN_HINTS:
            hit = next((n for n in needles if n in domain), None)
            if hit:
                reasons.append(f"domain hint: {hit}")
                for method, delta in deltas.items():
                    scores[method] += delta

        # ties go to the later, heavier method
        best = METHOD_ORDER[0]
        for method in METHOD_ORDER[1:]:
            if scores[method] >= scores[best]:
                best = method
        reasons.append("Heuristic score " + ", ".join(f"{m.value}={scores[m]}" for m in METHOD_ORDER))
        return ScrapingStrategy(
            method=best,
            confidence=max(0, min(scores[best], HEURISTIC_CONFIDENCE_CAP)),
            reasons=reasons,
            estimated_time=_estimated_time(best, profile),
            options=method_options(best, profile),
        )

    # ------------------------------------------------------------ writes

    def record_outcome(
        self,
        domain: str,
        method: FetchMethod,
        success: bool,
        error_text: Optional[str] = None,
    ) -> DomainProfile:
        """Fold one attempt into the profile. Call exactly once per attempt."""
        domain = normalize_domain(domain)
        method = FetchMethod(method)
        with self._lock_for(domain):
            profile = self._get_or_create(domain)
            profile.total_attempts += 1
            # Weighted by the domain-wide attempt count, not a per-method count.
            n = profile.total_attempts
            rate = profile.success_rates[method]
            if success:
                rate = (rate * (n - 1) + 1) / n
            else:
                rate = (rate * (n - 1)) / n
            profile.success_rates[method] = min(1.0, max(0.0, rate))

            if success:
                optimal = profile.optimal_strategy.method
                if method == optimal or profile.success_rates[method] > profile.success_rates[optimal]:
                    profile.optimal_strategy = ScrapingStrategy(
                        method=method,
                        confidence=round(profile.success_rates[method] * 100),
                        reasons=["Promoted by success rate"],
                        estimated_time=_estimated_time(method, profile),
                        options=method_options(method, profile),
                    )
            else:
                message = (error_text or "unknown error").strip()
                profile.recent_failures.append(f"{method.value}: {message}")
                self._apply_error_patterns(profile, message)

            profile.characteristics.difficulty = _max_difficulty(
                profile.characteristics.difficulty,
                _difficulty_for_flags(profile.characteristics.flag_count()),
            )
            profile.last_updated = utcnow()
            logger.debug(
                "profile_updated",
                domain=domain,
                method=method.value,
                success=success,
                rate=round(profile.success_rates[method], 4),
                total_attempts=n,
            )
            return copy.deepcopy(profile)

    @staticmethod
    def _apply_error_patterns(profile: DomainProfile, message: str) -> None:
        lowered = message.lower()
        for needles, attr in ERROR_PATTERNS:
            if any(n in lowered for n in needles) and not getattr(profile.characteristics, attr):
                setattr(profile.characteristics, attr, True)
                logger.info("profile_flag_raised", domain=profile.domain, flag=attr)

    def observe(
        self,
        domain: str,
        *,
        has_anti_bot: Optional[bool] = None,
        requires_js: Optional[bool] = None,
        has_rate_limit: Optional[bool] = None,
        has_captcha: Optional[bool] = None,
        difficulty: Optional[Difficulty] = None,
    ) -> DomainProfile:
        """Raise characteristic flags from content-level observations.

        Does not count as an attempt; flags are only ever raised here."""
        domain = normalize_domain(domain)
        flags = {
            "has_anti_bot": has_anti_bot,
            "requires_js": requires_js,
            "has_rate_limit": has_rate_limit,
            "has_captcha": has_captcha,
        }
        with self._lock_for(domain):
            profile = self._get_or_create(domain)
            for attr, value in flags.items():
                if value:
                    setattr(profile.characteristics, attr, True)
            computed = _difficulty_for_flags(profile.characteristics.flag_count())
            if difficulty is not None:
                computed = _max_difficulty(computed, Difficulty(difficulty))
            profile.characteristics.difficulty = _max_difficulty(profile.characteristics.difficulty, computed)
            profile.last_updated = utcnow()
            return copy.deepcopy(profile)

    # ------------------------------------------------------------ management

    def clear(self, domain: str) -> bool:
        domain = normalize_domain(domain)
        with self._lock_for(domain):
            with self._registry_lock:
                return self._profiles.pop(domain, None) is not None

    def clear_all(self) -> int:
        with self._registry_lock:
            count = len(self._profiles)
            self._profiles.clear()
            return count

    def export_json(self) -> str:
        return json.dumps([p.to_dict() for p in self.all_profiles()], indent=2, ensure_ascii=False)

    def import_json(self, data: str) -> int:
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ProfileImportError(f"Invalid profile JSON: {exc}") from exc
        records: Iterable[Any] = parsed if isinstance(parsed, list) else [parsed]
        imported = 0
        for record in records:
            if not isinstance(record, dict) or not record.get("domain"):
                continue
            try:
                profile = DomainProfile.from_dict(record)
            except (TypeError, ValueError, KeyError) as exc:
                raise ProfileImportError(f"Invalid profile for {record.get('domain')}: {exc}") from exc
            profile.domain = normalize_domain(profile.domain)
            with self._lock_for(profile.domain):
                with self._registry_lock:
                    self._profiles[profile.domain] = profile
            imported += 1
        logger.info("profiles_imported", count=imported)
        return imported
