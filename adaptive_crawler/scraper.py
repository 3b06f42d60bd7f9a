from __future__ import annotations

import time
from typing import Dict, List, Optional, Tuple

import structlog

from .base import validate_url
from .errors import AllStrategiesFailedError, FetchError, ServerBusyError
from .factory import FetcherFactory
from .models import (
    Difficulty,
    FetchMethod,
    FetchOptions,
    FetchResult,
    ScrapeOutcome,
    ScrapingStrategy,
)
from .parsing import needs_dynamic_rendering
from .profiles import BASE_ESTIMATED_SECONDS, DomainProfileStore, method_options
from .quality import completeness_score, merge_content, quality_score

logger = structlog.get_logger(__name__)

FALLBACK_ORDER: Dict[FetchMethod, Tuple[FetchMethod, ...]] = {
    FetchMethod.STATIC: (FetchMethod.DYNAMIC, FetchMethod.STEALTH),
    FetchMethod.DYNAMIC: (FetchMethod.STEALTH, FetchMethod.STATIC),
    FetchMethod.STEALTH: (FetchMethod.DYNAMIC, FetchMethod.STATIC),
}

LOW_QUALITY_THRESHOLD = 50
HYBRID_RENDER_THRESHOLD = 40
BLOCK_WORDS = ("blocked", "forbidden")


class AdaptiveScraper:
    """Selects a fetch strategy per domain and falls back through the others.

    Every executor attempt is folded into the DomainProfileStore exactly once,
    so the next selection for the domain sees what just happened. Admission
    errors (``ServerBusyError``) and cancellations are not site failures and
    propagate without touching the profile.
    """

    def __init__(
        self,
        profiles: DomainProfileStore,
        factory: FetcherFactory,
        enable_hybrid: bool = False,
    ) -> None:
        self._profiles = profiles
        self._factory = factory
        self._enable_hybrid = enable_hybrid

    @property
    def profiles(self) -> DomainProfileStore:
        return self._profiles

    def scrape(
        self,
        url: str,
        options: Optional[FetchOptions] = None,
        force_method: Optional[FetchMethod] = None,
    ) -> ScrapeOutcome:
        start = time.time()
        domain = validate_url(url)
        options = options or FetchOptions()
        if force_method is not None:
            force_method = FetchMethod(force_method)

        strategy = self._profiles.select_strategy(domain, force_method)
        logger.info(
            "strategy_selected",
            url=url,
            domain=domain,
            method=strategy.method.value,
            confidence=strategy.confidence,
            reasons=strategy.reasons,
        )

        attempted: List[FetchMethod] = []
        adaptations: List[str] = []
        errors: Dict[str, str] = {}

        try:
            result = self._execute(url, domain, strategy, options, attempted, adaptations)
        except FetchError as exc:
            errors[strategy.method.value] = str(exc)
            if force_method is not None:
                logger.warning("forced_method_failed", url=url, method=force_method.value, error=str(exc))
                raise
            result, strategy = self._fallback(url, domain, strategy.method, options, attempted, adaptations, errors)

        if strategy.method == FetchMethod.STATIC and force_method is None:
            result = self._maybe_hybrid(url, domain, result, options, attempted, adaptations, errors)

        score, reasons = quality_score(result.content)
        outcome = ScrapeOutcome(
            url=url,
            content=result.content,
            strategy=strategy,
            quality_score=score,
            completeness_score=completeness_score(result.content),
            methods_attempted=attempted,
            adaptations=adaptations,
            errors=errors,
            total_time=round(time.time() - start, 3),
        )
        logger.info(
            "scrape_completed",
            url=url,
            method=strategy.method.value,
            quality_score=score,
            quality_reasons=reasons,
            methods_attempted=[m.value for m in attempted],
            total_time=outcome.total_time,
        )
        return outcome

    # ------------------------------------------------------------ internals

    def _execute(
        self,
        url: str,
        domain: str,
        strategy: ScrapingStrategy,
        options: FetchOptions,
        attempted: List[FetchMethod],
        adaptations: List[str],
    ) -> FetchResult:
        method = strategy.method
        fetcher = self._factory.get(method)
        attempted.append(method)
        try:
            result = fetcher.fetch(url, options.merged(strategy.options))
        except ServerBusyError:
            raise
        except FetchError as exc:
            self._profiles.record_outcome(domain, method, False, str(exc))
            raise
        self._profiles.record_outcome(domain, method, True)
        self._observe(domain, method, result, adaptations)
        return result

    def _fallback(
        self,
        url: str,
        domain: str,
        failed: FetchMethod,
        options: FetchOptions,
        attempted: List[FetchMethod],
        adaptations: List[str],
        errors: Dict[str, str],
    ) -> Tuple[FetchResult, ScrapingStrategy]:
        for method in FALLBACK_ORDER[failed]:
            if not self._factory.has(method) or method in attempted:
                continue
            adaptations.append(f"Fallback to {method.value} after {failed.value} failed")
            logger.info("fallback_attempt", url=url, method=method.value, after=failed.value)
            profile = self._profiles.snapshot(domain)
            strategy = ScrapingStrategy(
                method=method,
                confidence=round(profile.success_rates[method] * 100),
                reasons=[f"Fallback after {failed.value} failed"],
                estimated_time=BASE_ESTIMATED_SECONDS[method],
                options=method_options(method, profile),
            )
            try:
                return self._execute(url, domain, strategy, options, attempted, adaptations), strategy
            except FetchError as exc:
                errors[method.value] = str(exc)
                logger.warning("fallback_failed", url=url, method=method.value, error=str(exc))
        logger.error("all_strategies_failed", url=url, errors=errors)
        raise AllStrategiesFailedError(url, errors)

    def _maybe_hybrid(
        self,
        url: str,
        domain: str,
        result: FetchResult,
        options: FetchOptions,
        attempted: List[FetchMethod],
        adaptations: List[str],
        errors: Dict[str, str],
    ) -> FetchResult:
        if not self._enable_hybrid or not self._factory.has(FetchMethod.DYNAMIC):
            return result
        if FetchMethod.DYNAMIC in attempted:
            return result
        needs, confidence, reasons = needs_dynamic_rendering(result.content.html)
        if confidence < HYBRID_RENDER_THRESHOLD:
            return result
        logger.info("hybrid_render", url=url, confidence=confidence, reasons=reasons)
        profile = self._profiles.snapshot(domain)
        strategy = ScrapingStrategy(
            method=FetchMethod.DYNAMIC,
            confidence=confidence,
            reasons=reasons,
            estimated_time=BASE_ESTIMATED_SECONDS[FetchMethod.DYNAMIC],
            options=method_options(FetchMethod.DYNAMIC, profile),
        )
        try:
            rendered = self._execute(url, domain, strategy, options, attempted, adaptations)
        except ServerBusyError:
            # Rendering is an enrichment here; the static result stands.
            logger.info("hybrid_render_skipped", url=url, reason="browser pool busy")
            return result
        except FetchError as exc:
            errors[FetchMethod.DYNAMIC.value] = str(exc)
            return result
        adaptations.append("Merged static and rendered content")
        merged = merge_content(result.content, rendered.content)
        diagnostics = {**result.diagnostics, "rendered": rendered.diagnostics}
        return FetchResult(content=merged, diagnostics=diagnostics)

    def _observe(self, domain: str, method: FetchMethod, result: FetchResult, adaptations: List[str]) -> None:
        """Content-level observations that raise characteristic flags."""
        content = result.content
        if method == FetchMethod.STATIC:
            score, _ = quality_score(content)
            if score < LOW_QUALITY_THRESHOLD:
                adaptations.append("Low quality content detected")
                self._profiles.observe(domain, requires_js=True)
        elif method == FetchMethod.DYNAMIC:
            text = content.content.lower()
            if any(word in text for word in BLOCK_WORDS):
                adaptations.append("Anti-bot protection detected")
                self._profiles.observe(domain, has_anti_bot=True)
        else:
            report = result.diagnostics.get("anti_bot") or {}
            captcha = result.diagnostics.get("captcha") or {}
            has_captcha = captcha.get("type", "none") != "none"
            if report.get("detected") or has_captcha:
                confidence = int(report.get("confidence", 0))
                if confidence >= 80 or has_captcha:
                    difficulty = Difficulty.EXTREME
                elif confidence > 50:
                    difficulty = Difficulty.HARD
                else:
                    difficulty = Difficulty.MEDIUM
                adaptations.append(f"Stealth scan: anti-bot confidence {confidence}")
                self._profiles.observe(
                    domain,
                    has_anti_bot=bool(report.get("detected")),
                    has_captcha=has_captcha,
                    difficulty=difficulty,
                )
