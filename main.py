from __future__ import annotations

import argparse
import json
import os
import sys
import time
from dataclasses import asdict
from typing import Any, Optional

from adaptive_crawler.errors import ScraperError
from adaptive_crawler.models import AuthConfig, CrawlConfig, FetchMethod, FetchOptions, SessionStatus
from adaptive_crawler.service import ScrapingService
from adaptive_crawler.settings import get_settings

DEFAULT_PROFILES_PATH = "profiles.json"
ACTIVE_STATUSES = (SessionStatus.PENDING, SessionStatus.RUNNING)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _load_profiles(service: ScrapingService, path: Optional[str]) -> None:
    if not path or not os.path.exists(path):
        return
    with open(path, "r", encoding="utf-8") as f:
        service.import_profiles(f.read())


def _save_profiles(service: ScrapingService, path: Optional[str]) -> None:
    if not path:
        return
    with open(path, "w", encoding="utf-8") as f:
        f.write(service.export_profiles())


def _crawl_config(args: argparse.Namespace) -> CrawlConfig:
    auth = None
    if args.auth_file:
        with open(args.auth_file, "r", encoding="utf-8") as f:
            auth = AuthConfig.from_dict(json.load(f))
    return CrawlConfig(
        max_pages=args.max_pages,
        max_depth=args.max_depth,
        respect_robots=not args.ignore_robots,
        delay=args.delay,
        concurrent=args.concurrent,
        include_patterns=args.include or [],
        exclude_patterns=args.exclude or [],
        user_agent=args.user_agent,
        timeout=args.timeout,
        authentication=auth,
        enable_structured_data=args.structured,
        force_method=FetchMethod(args.method) if args.method else None,
        captcha_solver=args.captcha_solver,
        captcha_api_key=args.captcha_api_key,
    )


def _follow(service: ScrapingService, session_id: str, interval: float) -> None:
    """Print progress until the session leaves the active states; Ctrl-C pauses it."""
    try:
        while True:
            service.wait_crawl(session_id, timeout=interval)
            progress = service.crawl_progress(session_id)
            print(
                f"session={session_id} status={progress.status.value} processed={progress.processed_urls} "
                f"failed={progress.failed_urls} total={progress.total_urls} current={progress.current_url}"
            )
            if progress.status not in ACTIVE_STATUSES:
                break
    except KeyboardInterrupt:
        service.pause_crawl(session_id)
        print(f"\npaused session={session_id}; continue with: crawl resume {session_id}")
    _print(asdict(service.crawl_progress(session_id)))


def run_scrape(service: ScrapingService, args: argparse.Namespace) -> None:
    options = FetchOptions(
        timeout=args.timeout,
        user_agent=args.user_agent,
        wait_for_selector=args.wait_for,
        captcha_solver=args.captcha_solver,
        captcha_api_key=args.captcha_api_key,
        impersonate=args.impersonate,
    )
    outcome = service.scrape(args.url, options, force_method=FetchMethod(args.method) if args.method else None)
    data = outcome.to_dict()
    if args.html:
        data["content"] = outcome.content.to_dict(include_html=True)
    _print(data)


def run_crawl(service: ScrapingService, args: argparse.Namespace) -> None:
    action = args.crawl_action
    if action == "start":
        session_id = service.start_crawl(args.url, _crawl_config(args))
        print(f"started session={session_id}")
        _follow(service, session_id, args.interval)
    elif action == "resume":
        service.resume_crawl(args.session_id)
        _follow(service, args.session_id, args.interval)
    elif action == "status":
        _print(service.crawl_status(args.session_id).to_dict())
    elif action == "progress":
        _print(asdict(service.crawl_progress(args.session_id)))
    elif action == "pause":
        _print(service.pause_crawl(args.session_id).to_dict())
    elif action == "stop":
        _print(service.stop_crawl(args.session_id).to_dict())
    elif action == "delete":
        _print({"session_id": args.session_id, "deleted": service.delete_crawl(args.session_id)})
    elif action == "content":
        _print(service.crawl_content(args.session_id))
    elif action == "list":
        _print([s.to_dict() for s in service.list_crawls()])


def run_profiles(service: ScrapingService, args: argparse.Namespace) -> None:
    action = args.profiles_action
    if action == "report":
        _print(service.success_rate_report())
    elif action == "show":
        profile = service.get_profile(args.domain)
        _print(profile.to_dict() if profile else None)
    elif action == "export":
        data = service.export_profiles()
        if args.output:
            with open(args.output, "w", encoding="utf-8") as f:
                f.write(data)
            print(f"exported profiles to {args.output}")
        else:
            print(data)
    elif action == "import":
        with open(args.input, "r", encoding="utf-8") as f:
            count = service.import_profiles(f.read())
        print(f"imported {count} profiles")
    elif action == "clear":
        if args.domain:
            print(f"cleared={service.clear_profile(args.domain)} domain={args.domain}")
        else:
            print(f"cleared {service.clear_profiles()} profiles")


def _add_fetch_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--method", choices=[m.value for m in FetchMethod], help="Force one fetch method (no fallback)")
    parser.add_argument("--timeout", type=float, default=30.0, help="Navigation / request timeout seconds")
    parser.add_argument("--user-agent", default=None, help="Override the User-Agent header")
    parser.add_argument("--captcha-solver", default="skip", help="skip | manual | 2captcha | anticaptcha")
    parser.add_argument("--captcha-api-key", default=None, help="API key for an external CAPTCHA service")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Adaptive scraping and crawl orchestration engine")
    parser.add_argument("--db", default=None, help="SQLite database path (default: SCRAPER_DATABASE_PATH)")
    parser.add_argument("--profiles", default=DEFAULT_PROFILES_PATH, help="Domain profile file loaded and saved per run")
    parser.add_argument("--hybrid", action="store_true", help="Merge static and rendered content for thin pages")
    sub = parser.add_subparsers(dest="command")

    scrape = sub.add_parser("scrape", help="Scrape one URL with strategy selection and fallback")
    scrape.add_argument("url")
    _add_fetch_args(scrape)
    scrape.add_argument("--wait-for", default=None, help="CSS selector to wait for after navigation")
    scrape.add_argument("--impersonate", default=None, help="curl_cffi browser to impersonate for static fetches")
    scrape.add_argument("--html", action="store_true", help="Include the raw HTML in the output")

    crawl = sub.add_parser("crawl", help="Crawl session lifecycle")
    crawl_sub = crawl.add_subparsers(dest="crawl_action")
    start = crawl_sub.add_parser("start", help="Start a crawl and follow its progress")
    start.add_argument("url")
    _add_fetch_args(start)
    start.add_argument("--max-pages", type=int, default=100)
    start.add_argument("--max-depth", type=int, default=5)
    start.add_argument("--delay", type=float, default=1.0, help="Seconds between pages per worker")
    start.add_argument("--concurrent", type=int, default=3, help="Worker threads")
    start.add_argument("--include", action="append", help="Regex a URL must match (repeatable)")
    start.add_argument("--exclude", action="append", help="Regex that skips a URL (repeatable)")
    start.add_argument("--ignore-robots", action="store_true")
    start.add_argument("--structured", action="store_true", help="Extract JSON-LD / OpenGraph data")
    start.add_argument("--auth-file", default=None, help="JSON file with the authentication config")
    start.add_argument("--interval", type=float, default=5.0, help="Progress print interval seconds")
    resume = crawl_sub.add_parser("resume", help="Resume a paused session and follow it")
    resume.add_argument("session_id")
    resume.add_argument("--interval", type=float, default=5.0)
    for name in ("status", "progress", "pause", "stop", "delete", "content"):
        crawl_sub.add_parser(name).add_argument("session_id")
    crawl_sub.add_parser("list")

    profiles = sub.add_parser("profiles", help="Domain profile management")
    profiles_sub = profiles.add_subparsers(dest="profiles_action")
    profiles_sub.add_parser("report")
    profiles_sub.add_parser("show").add_argument("domain")
    profiles_sub.add_parser("export").add_argument("--output", default=None)
    profiles_sub.add_parser("import").add_argument("input")
    profiles_sub.add_parser("clear").add_argument("--domain", default=None)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1
    settings = get_settings()
    if args.db:
        settings = settings.model_copy(update={"database_path": args.db})

    service = ScrapingService(settings=settings, enable_hybrid=args.hybrid)
    _load_profiles(service, args.profiles)
    started = time.monotonic()
    try:
        if args.command == "scrape":
            run_scrape(service, args)
        elif args.command == "crawl":
            if not args.crawl_action:
                parser.parse_args([args.command, "--help"])
            run_crawl(service, args)
        elif args.command == "profiles":
            if not args.profiles_action:
                parser.parse_args([args.command, "--help"])
            run_profiles(service, args)
    except ScraperError as exc:
        print(f"error: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 2
    finally:
        _save_profiles(service, args.profiles)
        service.close()
    print(f"\nDONE in {time.monotonic() - started:.1f}s", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
