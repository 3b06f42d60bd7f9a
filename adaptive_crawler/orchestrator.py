"""Crawl session orchestration.

A session moves through ``pending -> running -> {paused, completed, failed}``;
a paused session can be resumed (``running``) or stopped (``failed``).

Each running session owns a supervisor thread, which owns
``config.concurrent`` worker threads. Workers share the durable frontier and
the process-wide admission gate (through the scraper); nothing else. Crawl
counters live in the store and are only ever incremented there, so
``progress`` is correct from any thread and after a restart.

``max_pages`` is enforced with a reservation counter: a worker reserves a
page before claiming a URL and gives the reservation back if the URL turns
out to be skipped or fails. Exactly ``max_pages`` pages are therefore
processed even with many workers, and unclaimed URLs stay pending.
"""

from __future__ import annotations

import re
import threading
import uuid
from collections import deque
from typing import Deque, Dict, List, Optional

import structlog

from .auth import AuthenticationHandler
from .backoff import BackoffStrategy
from .base import validate_url
from .errors import (
    AuthenticationError,
    ContentValidationError,
    FetchCancelledError,
    FetchError,
    InvalidSessionStateError,
    ScraperError,
    ServerBusyError,
    SessionNotFoundError,
)
from .extraction import ContentExtractor, DefaultContentExtractor, StructuredExtractor
from .frontier import UrlFrontier, calculate_priority, is_internal_url
from .models import (
    CrawlConfig,
    CrawlProgress,
    CrawlSession,
    FetchOptions,
    FrontierItem,
    FrontierStatus,
    ScrapeOutcome,
    SessionStatus,
    utcnow,
)
from .robots import RobotsChecker, RobotsRules
from .scraper import AdaptiveScraper
from .storage import StorageBase

logger = structlog.get_logger(__name__)

SEED_PRIORITY = 10
MIN_HTML_LENGTH = 1000
BLOCKED_TITLE_WORDS = ("access denied", "blocked", "captcha")
RECENT_ERRORS_LIMIT = 100

ALLOWED_TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.PENDING: frozenset({SessionStatus.RUNNING, SessionStatus.PAUSED, SessionStatus.FAILED}),
    SessionStatus.RUNNING: frozenset({SessionStatus.PAUSED, SessionStatus.COMPLETED, SessionStatus.FAILED}),
    SessionStatus.PAUSED: frozenset({SessionStatus.RUNNING, SessionStatus.FAILED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
}


def matches_patterns(url: str, include: List[str], exclude: List[str]) -> bool:
    if include and not any(re.search(p, url) for p in include):
        return False
    return not any(re.search(p, url) for p in exclude)


class _SessionRuntime:
    """Live handles of one running session; everything else is in the store."""

    def __init__(self, session: CrawlSession) -> None:
        self.session_id = session.session_id
        self.domain = session.domain
        self.start_url = session.start_url
        self.config = session.config
        self.stop_event = threading.Event()
        self.lock = threading.Lock()
        self.reserved = session.stats.processed_urls
        self.active = 0
        self.budget_exhausted = False
        self.current_url: Optional[str] = None
        self.errors: Deque[str] = deque(maxlen=RECENT_ERRORS_LIMIT)
        self.robots: Optional[RobotsRules] = None
        self.delay = session.config.delay
        self.fatal: Optional[BaseException] = None
        self.supervisor: Optional[threading.Thread] = None

    def begin(self) -> bool:
        """Reserve one page of the budget; False once it is used up."""
        with self.lock:
            if self.reserved >= self.config.max_pages:
                self.budget_exhausted = True
                return False
            self.reserved += 1
            self.active += 1
            return True

    def end(self, counted: bool) -> None:
        with self.lock:
            self.active -= 1
            if not counted:
                self.reserved -= 1

    def others_active(self) -> bool:
        with self.lock:
            return self.active > 0

    def alive(self) -> bool:
        return self.supervisor is not None and self.supervisor.is_alive()


class CrawlOrchestrator:
    def __init__(
        self,
        storage: StorageBase,
        frontier: UrlFrontier,
        scraper: AdaptiveScraper,
        content_extractor: Optional[ContentExtractor] = None,
        structured_extractor: Optional[StructuredExtractor] = None,
        robots_checker: Optional[RobotsChecker] = None,
        auth_handler: Optional[AuthenticationHandler] = None,
        robots_user_agent: str = "AdaptiveCrawler-Bot",
        idle_wait: float = 0.5,
    ) -> None:
        self._storage = storage
        self._frontier = frontier
        self._scraper = scraper
        self._content_extractor = content_extractor or DefaultContentExtractor()
        self._structured_extractor = structured_extractor
        self._robots = robots_checker
        self._auth = auth_handler
        self._robots_user_agent = robots_user_agent
        self._idle_wait = idle_wait
        self._lock = threading.RLock()
        self._runtimes: Dict[str, _SessionRuntime] = {}

    # ------------------------------------------------------------ lifecycle

    def start(self, url: str, config: Optional[CrawlConfig] = None) -> str:
        config = config or CrawlConfig()
        domain = validate_url(url)
        session = CrawlSession(session_id=str(uuid.uuid4()), domain=domain, start_url=url, config=config)
        self._storage.create_session(session)
        inserted = self._frontier.add_urls(session.session_id, [(url, 0, None, SEED_PRIORITY)])
        self._storage.increment_stats(session.session_id, total_urls=inserted)
        logger.info("crawl_session_created", session_id=session.session_id, url=url, config=config.to_dict())
        self._launch(session)
        return session.session_id

    def pause(self, session_id: str) -> CrawlSession:
        self._transition(session_id, SessionStatus.PAUSED)
        self._halt(session_id)
        return self.status(session_id)

    def resume(self, session_id: str) -> CrawlSession:
        session = self.status(session_id)
        if session.status != SessionStatus.PAUSED:
            raise InvalidSessionStateError(f"Session {session_id} is {session.status.value}, not paused")
        runtime = self._runtimes.get(session_id)
        if runtime is not None and runtime.alive():
            runtime.supervisor.join()
        self._transition(session_id, SessionStatus.RUNNING)
        self._launch(self.status(session_id))
        return self.status(session_id)

    def stop(self, session_id: str) -> CrawlSession:
        self._transition(session_id, SessionStatus.FAILED, end_time=True)
        self._halt(session_id)
        return self.status(session_id)

    def delete(self, session_id: str) -> bool:
        session = self.status(session_id)
        if session.status in (SessionStatus.PENDING, SessionStatus.RUNNING):
            self.stop(session_id)
        else:
            self._halt(session_id)
        self._frontier.purge(session_id)
        deleted = self._storage.delete_session(session_id)
        with self._lock:
            self._runtimes.pop(session_id, None)
        logger.info("crawl_session_deleted", session_id=session_id)
        return deleted

    def status(self, session_id: str) -> CrawlSession:
        session = self._storage.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Crawl session not found: {session_id}")
        return session

    def progress(self, session_id: str) -> CrawlProgress:
        session = self.status(session_id)
        counts = self._frontier.stats(session_id)
        runtime = self._runtimes.get(session_id)
        if runtime is not None:
            errors = list(runtime.errors)
            current_url = runtime.current_url if runtime.alive() else None
        else:
            failed = self._frontier.items(session_id, FrontierStatus.FAILED)
            errors = [f"{item.url}: {item.last_error}" for item in failed[-20:]]
            current_url = None
        return CrawlProgress(
            session_id=session_id,
            status=session.status,
            total_urls=session.stats.total_urls,
            processed_urls=session.stats.processed_urls,
            failed_urls=session.stats.failed_urls,
            extracted_items=session.stats.extracted_items,
            frontier=counts,
            current_url=current_url,
            errors=errors,
        )

    def list_sessions(self) -> List[CrawlSession]:
        return self._storage.list_sessions()

    def content(self, session_id: str) -> List[dict]:
        self.status(session_id)
        return self._storage.list_content(session_id)

    def wait(self, session_id: str, timeout: Optional[float] = None) -> CrawlSession:
        """Block until the session's supervisor exits (or ``timeout``)."""
        runtime = self._runtimes.get(session_id)
        if runtime is not None and runtime.supervisor is not None:
            runtime.supervisor.join(timeout)
        return self.status(session_id)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Pause every running session so it can be resumed later."""
        with self._lock:
            running = [sid for sid, rt in self._runtimes.items() if rt.alive()]
        for session_id in running:
            try:
                self.pause(session_id)
            except InvalidSessionStateError:
                self.wait(session_id, timeout)

    # ------------------------------------------------------------ internals

    def _transition(
        self,
        session_id: str,
        new: SessionStatus,
        start_time: bool = False,
        end_time: bool = False,
        expected: Optional[SessionStatus] = None,
    ) -> None:
        with self._lock:
            session = self.status(session_id)
            if expected is not None and session.status != expected:
                raise InvalidSessionStateError(
                    f"Session {session_id} is {session.status.value}, expected {expected.value}"
                )
            if new not in ALLOWED_TRANSITIONS[session.status]:
                raise InvalidSessionStateError(
                    f"Session {session_id} cannot go from {session.status.value} to {new.value}"
                )
            now = utcnow()
            self._storage.update_session_status(
                session_id,
                new,
                start_time=now if start_time and session.stats.start_time is None else None,
                end_time=now if end_time else None,
            )
        logger.info("session_status_changed", session_id=session_id, old=session.status.value, new=new.value)

    def _launch(self, session: CrawlSession) -> None:
        runtime = _SessionRuntime(session)
        runtime.supervisor = threading.Thread(
            target=self._supervise,
            args=(runtime,),
            name=f"crawl-{session.session_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._runtimes[session.session_id] = runtime
        runtime.supervisor.start()

    def _halt(self, session_id: str) -> None:
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            self._frontier.requeue_processing(session_id)
            return
        runtime.stop_event.set()
        self._frontier.wake(session_id)
        if runtime.supervisor is not None and runtime.supervisor is not threading.current_thread():
            # Navigations and gate waits are bounded, so this join is too.
            runtime.supervisor.join(runtime.config.timeout * 2 + 30)
        self._frontier.requeue_processing(session_id)

    def _supervise(self, rt: _SessionRuntime) -> None:
        sid = rt.session_id
        log = logger.bind(session_id=sid)
        try:
            current = self.status(sid).status
            if current == SessionStatus.PENDING:
                self._transition(sid, SessionStatus.RUNNING, start_time=True, expected=SessionStatus.PENDING)
            elif current != SessionStatus.RUNNING:
                return
            if rt.stop_event.is_set():
                return
            if rt.config.respect_robots and self._robots is not None:
                user_agent = rt.config.user_agent or self._robots_user_agent
                rt.robots = self._robots.rules_for(rt.start_url, user_agent)
                robots_delay = rt.robots.crawl_delay(user_agent)
                if robots_delay and robots_delay > rt.delay:
                    rt.delay = robots_delay
                    log.info("robots_crawl_delay", delay=robots_delay)

            workers = [
                threading.Thread(target=self._worker, args=(rt, i), name=f"crawl-{sid[:8]}-{i}", daemon=True)
                for i in range(rt.config.concurrent)
            ]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join()

            if rt.fatal is not None:
                raise rt.fatal
            if not rt.stop_event.is_set():
                self._finish(sid, SessionStatus.COMPLETED)
                log.info("crawl_session_completed", budget_exhausted=rt.budget_exhausted)
        except InvalidSessionStateError:
            # Paused or stopped while starting up.
            log.info("crawl_session_interrupted")
        except Exception as exc:  # noqa: BLE001
            log.exception("crawl_session_failed", error=str(exc))
            rt.errors.append(f"session: {exc}")
            self._finish(sid, SessionStatus.FAILED)
            self._frontier.requeue_processing(sid)

    def _finish(self, session_id: str, status: SessionStatus) -> None:
        try:
            self._transition(session_id, status, end_time=True)
        except InvalidSessionStateError:
            # A concurrent pause or stop already moved the session on.
            pass

    def _fetch_options(self, config: CrawlConfig, stop_event: threading.Event) -> FetchOptions:
        return FetchOptions(
            timeout=config.timeout,
            user_agent=config.user_agent,
            captcha_solver=config.captcha_solver,
            captcha_api_key=config.captcha_api_key,
            cancel_event=stop_event,
        )

    def _authenticate(self, rt: _SessionRuntime, options: FetchOptions) -> None:
        """Apply credentials to the worker's options; raises when a required login fails."""
        auth = rt.config.authentication
        if auth is None or auth.type == "none" or self._auth is None:
            return
        if self._auth.apply_stored(options, rt.domain):
            return
        result = self._auth.authenticate(None, auth, rt.domain)
        if result.success:
            self._auth.apply_stored(options, rt.domain)
            return
        rt.errors.append(f"authentication: {result.error}")
        if not auth.optional:
            raise AuthenticationError(result.error or "authentication failed")

    def _worker(self, rt: _SessionRuntime, index: int) -> None:
        sid = rt.session_id
        log = logger.bind(session_id=sid, worker=index)
        try:
            options = self._fetch_options(rt.config, rt.stop_event)
            try:
                self._authenticate(rt, options)
            except AuthenticationError as exc:
                log.warning("worker_auth_failed", error=str(exc))
                return
            while not rt.stop_event.is_set():
                if not rt.begin():
                    self._frontier.wake(sid)
                    break
                counted = False
                try:
                    item = self._frontier.next(sid)
                    if item is not None:
                        counted = self._process(rt, item, options, log)
                finally:
                    rt.end(counted)
                if item is None:
                    if self._frontier.pending_count(sid) == 0 and not rt.others_active():
                        self._frontier.wake(sid)
                        break
                    self._frontier.wait_for_work(sid, self._idle_wait)
                    continue
                self._frontier.wake(sid)
                if counted and rt.delay > 0:
                    rt.stop_event.wait(rt.delay)
        except Exception as exc:  # noqa: BLE001
            log.exception("crawl_worker_crashed", error=str(exc))
            rt.fatal = exc
            rt.stop_event.set()
            self._frontier.wake(sid)

    def _process(self, rt: _SessionRuntime, item: FrontierItem, options: FetchOptions, log) -> bool:
        """Handle one claimed URL; True when it counts as a processed page."""
        config = rt.config
        rt.current_url = item.url
        user_agent = config.user_agent or self._robots_user_agent
        if rt.robots is not None and not rt.robots.can_fetch(user_agent, item.url):
            self._frontier.mark_failed(item.id, "Blocked by robots.txt")
            log.info("url_blocked_by_robots", url=item.url)
            return False
        if item.depth >= config.max_depth:
            self._frontier.mark_completed(item.id)
            return False
        if not matches_patterns(item.url, config.include_patterns, config.exclude_patterns):
            self._frontier.mark_completed(item.id)
            return False

        try:
            outcome = self._scrape_with_retry(rt, item.url, options)
        except FetchCancelledError:
            self._frontier.release(item.id)
            return False
        except ScraperError as exc:
            self._fail(rt, item, f"Crawling failed: {exc}", log)
            return False

        try:
            self._validate(outcome)
        except ContentValidationError as exc:
            self._fail(rt, item, str(exc), log)
            return False

        extracted = self._content_extractor.extract(outcome.content.html, item.url, rt.domain)
        if not extracted.text_content.strip():
            self._fail(rt, item, "Empty content extracted", log)
            return False

        structured = None
        if config.enable_structured_data and self._structured_extractor is not None:
            try:
                structured = self._structured_extractor.extract(outcome.content.html, item.url)
            except Exception as exc:  # noqa: BLE001
                log.warning("structured_extraction_failed", url=item.url, error=str(exc))

        self._storage.save_content(
            rt.session_id,
            extracted,
            method=outcome.strategy.method.value,
            quality_score=outcome.quality_score,
            structured=structured,
        )

        depth = item.depth + 1
        batch = [
            (link, depth, item.url, calculate_priority(link, depth))
            for link in extracted.internal_links
            if is_internal_url(link, rt.domain)
        ]
        inserted = self._frontier.add_urls(rt.session_id, batch) if batch else 0
        self._storage.increment_stats(
            rt.session_id,
            total_urls=inserted,
            processed_urls=1,
            extracted_items=len(extracted.content_chunks),
        )
        self._frontier.mark_completed(item.id)
        log.info(
            "page_processed",
            url=item.url,
            depth=item.depth,
            method=outcome.strategy.method.value,
            quality_score=outcome.quality_score,
            new_urls=inserted,
        )
        return True

    def _scrape_with_retry(self, rt: _SessionRuntime, url: str, options: FetchOptions) -> ScrapeOutcome:
        attempts = max(1, rt.config.max_fetch_retries)
        backoff = BackoffStrategy(base_seconds=1.0, max_seconds=5.0)
        for attempt in range(1, attempts + 1):
            try:
                return self._scraper.scrape(url, options, force_method=rt.config.force_method)
            except (FetchError, ServerBusyError) as exc:
                transient = isinstance(exc, ServerBusyError) or exc.transient
                if not transient or attempt >= attempts:
                    raise
                sleep_s = backoff.get_sleep(attempt, str(getattr(exc, "status_code", "") or ""))
                logger.info("page_retry", url=url, attempt=attempt, sleep=round(sleep_s, 2), error=str(exc))
                if rt.stop_event.wait(sleep_s):
                    raise FetchCancelledError(f"crawl of {url} cancelled") from exc
        raise FetchError(f"retries exhausted for {url}")

    @staticmethod
    def _validate(outcome: ScrapeOutcome) -> None:
        html = outcome.content.html or ""
        if len(html) < MIN_HTML_LENGTH:
            raise ContentValidationError(f"Content too short ({len(html)} chars)")
        title = (outcome.content.title or "").lower()
        for word in BLOCKED_TITLE_WORDS:
            if word in title:
                raise ContentValidationError(f"Blocked page detected (title contains '{word}')")

    def _fail(self, rt: _SessionRuntime, item: FrontierItem, error: str, log) -> None:
        self._frontier.mark_failed(item.id, error)
        self._storage.increment_stats(rt.session_id, failed_urls=1)
        rt.errors.append(f"{item.url}: {error}")
        log.warning("page_failed", url=item.url, error=error)
