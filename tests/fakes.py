"""In-process stand-ins for the network and the browser."""

import threading
from typing import Dict, Iterable, List, Optional, Union

import requests

from adaptive_crawler.base import BaseFetcher, RawPage
from adaptive_crawler.errors import FetchCancelledError
from adaptive_crawler.models import FetchMethod, FetchOptions

FILLER = "lorem ipsum dolor sit amet consectetur adipiscing elit sed do eiusmod tempor "


def rich_page(title: str = "Example Domain Article Page", links: Iterable[str] = (), paragraphs: int = 50) -> str:
    """A page that passes content validation and scores well on quality."""
    anchors = "".join(f'<li><a href="{href}">Link to {href}</a></li>' for href in links)
    body = "".join(f"<p>{FILLER}</p>" for _ in range(paragraphs))
    headings = "".join(f"<h2>Section {i}</h2>" for i in range(6))
    images = "".join(f'<img src="/img/{i}.png" alt="image {i}">' for i in range(6))
    return (
        "<html><head>"
        f"<title>{title}</title>"
        '<meta name="description" content="A long enough description of this example page for the scorer.">'
        '<meta property="og:title" content="Example">'
        '<meta property="og:description" content="Example description">'
        "</head><body><main>"
        f"<h1>{title}</h1>{headings}{images}{body}<ul>{anchors}</ul>"
        "</main></body></html>"
    )


Response = Union[str, Exception]


class FakeFetcher(BaseFetcher):
    """Serves canned HTML (or raises canned errors) per URL."""

    def __init__(
        self,
        method: FetchMethod,
        pages: Optional[Dict[str, Response]] = None,
        default: Optional[Response] = None,
        metrics=None,
        diagnostics: Optional[dict] = None,
    ) -> None:
        super().__init__(metrics)
        self.method = method
        self.diagnostics = dict(diagnostics or {})
        self.pages = dict(pages or {})
        self.default = default if default is not None else rich_page()
        self.calls: List[str] = []
        self.options: List[FetchOptions] = []
        self._lock = threading.Lock()

    def retrieve(self, url: str, options: FetchOptions) -> RawPage:
        with self._lock:
            self.calls.append(url)
            self.options.append(options)
        response = self.pages.get(url, self.default)
        if isinstance(response, Exception):
            raise response
        return RawPage(html=response, final_url=url, status_code=200, diagnostics=dict(self.diagnostics))


class BlockingFetcher(FakeFetcher):
    """Holds every fetch until ``release`` is set or the crawl is cancelled."""

    def __init__(self, method: FetchMethod, **kwargs) -> None:
        super().__init__(method, **kwargs)
        self.started = threading.Event()
        self.release = threading.Event()

    def retrieve(self, url: str, options: FetchOptions) -> RawPage:
        self.started.set()
        while not self.release.is_set():
            if options.cancel_event is not None and options.cancel_event.wait(0.02):
                raise FetchCancelledError(f"fetch of {url} cancelled")
        return super().retrieve(url, options)


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "", payload=None, url: str = "") -> None:
        self.status_code = status_code
        self.text = text
        self.url = url
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload


class FakeSession:
    """Minimal requests.Session replacement that replays queued responses."""

    def __init__(self, get=None, post=None) -> None:
        self.get_responses = list(get or [])
        self.post_responses = list(post or [])
        self.requests: List[tuple] = []
        self.cookies = requests.cookies.RequestsCookieJar()

    def _next(self, queue, method, url, kwargs):
        self.requests.append((method, url, kwargs))
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        return self._next(self.get_responses, "GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._next(self.post_responses, "POST", url, kwargs)
