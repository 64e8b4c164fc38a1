#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "fastapi",
#     "uvicorn",
#     "jinja2",
#     "playwright",
# ]
# ///
"""
Sporza "pas verschenen" reader with on-demand content extraction.

Discovers article links from the Sporza index page with a headless browser
(once, when the database is empty), extracts readable article HTML on demand
by injecting Readability.js into a second browser session, caches the result
in SQLite and serves htmx-friendly HTML fragments.

Usage:
    ./sporza_new.py                  # Start server (localhost:3333)
    ./sporza_new.py --public         # Bind to all interfaces (0.0.0.0)
    ./sporza_new.py --port 8080      # Custom port
    ./sporza_new.py --rediscover     # Re-run link discovery before serving
    ./sporza_new.py --reset          # Delete all cached articles and exit

Environment variables (a .env file next to this script is loaded first):
    SQLITE_DB_PATH          - Path of the SQLite database (required)
    READER_INDEX_URL        - Index page to discover articles from
    READER_CARD_SELECTOR    - CSS selector of an article card
    READER_TITLE_SELECTOR   - CSS selector of the title inside a card
    READER_BROWSER          - firefox, chromium or webkit (default: firefox)
    READER_NAV_TIMEOUT_MS   - Navigation timeout in ms (default: 30000)
    READER_EXTRACT_TIMEOUT  - Max seconds for one extraction (default: 90)
    READER_PORT             - Server port (default: 3333)
    READER_SCRIPT_URL       - URL of Readability.js injected into pages
"""

import argparse
import asyncio
import logging
import os
import sqlite3
import sys
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import urljoin

from fastapi import FastAPI, Query, Request
from fastapi.responses import HTMLResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright
from starlette.middleware.base import BaseHTTPMiddleware


# Set up logging with timestamps, colors, and aligned prefixes
class ColoredFormatter(logging.Formatter):
    """Formatter with colored levels and a ``[prefix]`` column.

    The prefix is ``http`` for uvicorn, ``browser`` for playwright, or the
    ``[tag]`` a message starts with (``[extract] done ...``).
    """

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    PREFIX_COLORS = {
        "http": "\033[34m",
        "browser": "\033[34m",
        "discovery": "\033[35m",
        "extract": "\033[36m",
        "store": "\033[33m",
    }
    LOGGER_PREFIXES = (("uvicorn", "http"), ("playwright", "browser"))
    RESET = "\033[0m"
    PREFIX_WIDTH = 10

    def format(self, record):
        prefix, msg = self._split_prefix(record)
        level = f"{self.LEVEL_COLORS.get(record.levelname, '')}{record.levelname:<7}{self.RESET}"
        tag = f"{self.PREFIX_COLORS.get(prefix, '')}[{prefix:<{self.PREFIX_WIDTH}}]{self.RESET}"
        return f"{self.formatTime(record, self.datefmt)} {level} {tag} {msg}"

    def _split_prefix(self, record):
        msg = record.getMessage()
        for logger_name, prefix in self.LOGGER_PREFIXES:
            if record.name.startswith(logger_name):
                return prefix, msg
        if msg.startswith("["):
            end = msg.find("]")
            if end > 0:
                return msg[1:end], msg[end + 1 :].lstrip()
        return "main", msg


def setup_logging():
    """Configure logging for the application and uvicorn."""
    handler = logging.StreamHandler()
    handler.setFormatter(ColoredFormatter(datefmt="%H:%M:%S"))

    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        logger = logging.getLogger(name)
        logger.handlers = [handler]
        logger.propagate = False


log = logging.getLogger("sporza_new")

# =============================================================================
# Configuration
# =============================================================================

BASE_DIR = Path(__file__).parent
TEMPLATES_DIR = BASE_DIR / "templates"
PUBLIC_DIR = BASE_DIR / "public"
READABILITY_JS = PUBLIC_DIR / "assets" / "js" / "Readability.js"

DEFAULT_INDEX_URL = "https://sporza.be/nl/pas-verschenen/"
DEFAULT_CARD_SELECTOR = ".sw-card-module-card"
DEFAULT_TITLE_SELECTOR = ".sw-title-module-title"
DEFAULT_BROWSER = "firefox"
DEFAULT_PORT = 3333

NAV_TIMEOUT_MS = 30000  # playwright default timeout for goto/evaluate
EXTRACT_TIMEOUT = 90.0  # seconds for a whole extraction (launch .. persist)

BROWSER_ENGINES = ("firefox", "chromium", "webkit")


def load_env_file(path: Path):
    """Load KEY=VALUE lines into os.environ without overriding existing values."""
    if not path.exists():
        return
    for line in path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            key, _, value = line.partition("=")
            os.environ.setdefault(key.strip(), value.strip())


@dataclass
class Settings:
    db_path: Path
    index_url: str = DEFAULT_INDEX_URL
    card_selector: str = DEFAULT_CARD_SELECTOR
    title_selector: str = DEFAULT_TITLE_SELECTOR
    browser: str = DEFAULT_BROWSER
    nav_timeout_ms: int = NAV_TIMEOUT_MS
    extract_timeout: float = EXTRACT_TIMEOUT
    port: int = DEFAULT_PORT
    script_url_override: Optional[str] = None

    @property
    def script_url(self) -> str:
        """Readability.js as served by this process's /public mount."""
        if self.script_url_override:
            return self.script_url_override
        return f"http://localhost:{self.port}/public/assets/js/Readability.js"

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        env = os.environ if environ is None else environ

        db_path = env.get("SQLITE_DB_PATH", "").strip()
        if not db_path:
            raise ConfigError("please specify the SQLITE_DB_PATH env var")

        browser = env.get("READER_BROWSER", DEFAULT_BROWSER).lower()
        if browser not in BROWSER_ENGINES:
            raise ConfigError(
                f"READER_BROWSER must be one of {', '.join(BROWSER_ENGINES)}, got {browser!r}"
            )

        try:
            nav_timeout_ms = int(env.get("READER_NAV_TIMEOUT_MS", NAV_TIMEOUT_MS))
            extract_timeout = float(env.get("READER_EXTRACT_TIMEOUT", EXTRACT_TIMEOUT))
            port = int(env.get("READER_PORT", DEFAULT_PORT))
        except ValueError as e:
            raise ConfigError(f"invalid numeric setting: {e}") from e

        return cls(
            db_path=Path(db_path).expanduser(),
            index_url=env.get("READER_INDEX_URL", DEFAULT_INDEX_URL),
            card_selector=env.get("READER_CARD_SELECTOR", DEFAULT_CARD_SELECTOR),
            title_selector=env.get("READER_TITLE_SELECTOR", DEFAULT_TITLE_SELECTOR),
            browser=browser,
            nav_timeout_ms=nav_timeout_ms,
            extract_timeout=extract_timeout,
            port=port,
            script_url_override=env.get("READER_SCRIPT_URL") or None,
        )


# =============================================================================
# Errors
# =============================================================================
# Each error carries the HTTP status used when it reaches a request handler.


class ReaderError(Exception):
    status_code = 500


class ConfigError(ReaderError):
    """Required configuration is missing or invalid (fatal at startup)."""


class PersistenceError(ReaderError):
    """The article database is unreachable or a write failed."""


class NotFound(ReaderError):
    status_code = 404


class BrowserError(ReaderError):
    status_code = 502


class BrowserLaunchError(BrowserError):
    status_code = 503


class NavigationError(BrowserError):
    pass


class ScriptError(BrowserError):
    """Injecting or evaluating a script in the page failed."""


class DiscoveryError(ReaderError):
    status_code = 502


class ExtractionEmpty(ReaderError):
    """The extractor ran but found no readable content."""

    status_code = 422


class ExtractionTimeout(ReaderError):
    status_code = 504


# =============================================================================
# Models
# =============================================================================


@dataclass
class Article:
    title: str
    url: str
    html: Optional[str] = None


@dataclass
class StoredArticle:
    id: int
    title: str
    url: str
    html: Optional[str] = None

    @property
    def extracted(self) -> bool:
        return bool(self.html)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StoredArticle":
        return cls(id=row["id"], title=row["title"], url=row["url"], html=row["html"])


# =============================================================================
# Database Schema & Operations
# =============================================================================

SCHEMA = """
-- Articles discovered on the index page; html is filled in by extraction
CREATE TABLE IF NOT EXISTS article (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    html TEXT,
    url TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL
);
"""


class ArticleStore:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._conns: list[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()

    def _get_conn(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn"):
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")  # Safe with WAL
                conn.execute("PRAGMA busy_timeout = 5000")  # Wait 5s for locks
            except (OSError, sqlite3.Error) as e:
                raise PersistenceError(
                    f"could not open database {self.db_path}: {e}"
                ) from e
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return self._local.conn

    def init(self):
        """Create the schema and check the connection is usable."""
        try:
            conn = self._get_conn()
            conn.executescript(SCHEMA)
            conn.execute("SELECT 1").fetchone()
            conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"could not create article table: {e}") from e

    def close(self):
        """Close the connections opened by every thread that used this store."""
        with self._conns_lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            conn.close()
        self._local = threading.local()

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._get_conn().execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

    def commit(self):
        try:
            self._get_conn().commit()
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

    def fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        return self.execute(sql, params).fetchall()

    # --- Article operations ---

    def add(self, article: Article) -> int:
        """Insert an article and return its id.

        A URL that is already stored takes the update path: the title is
        refreshed and the existing id is returned. Extracted html is only
        overwritten when the incoming article carries html of its own.
        """
        # fetchall steps the statement to completion before the commit
        rows = self.fetchall(
            """
            INSERT INTO article (html, url, title) VALUES (?, ?, ?)
            ON CONFLICT(url) DO UPDATE SET
                title = excluded.title,
                html = COALESCE(excluded.html, article.html)
            RETURNING id
        """,
            (article.html, article.url, article.title),
        )
        self.commit()
        return rows[0]["id"]

    def update_html(self, article_id: int, html: str) -> int:
        """Overwrite the html of an article. Returns rows affected (0 if no such id)."""
        cur = self.execute(
            "UPDATE article SET html = ? WHERE id = ?", (html, article_id)
        )
        self.commit()
        return cur.rowcount

    def get_by_id(self, article_id: int) -> StoredArticle:
        row = self.fetchone("SELECT * FROM article WHERE id = ?", (article_id,))
        if not row:
            raise NotFound(f"no article with id {article_id}")
        return StoredArticle.from_row(row)

    def get_by_url(self, url: str) -> StoredArticle:
        row = self.fetchone("SELECT * FROM article WHERE url = ?", (url,))
        if not row:
            raise NotFound(f"no article with url {url}")
        return StoredArticle.from_row(row)

    def count(self) -> int:
        return self.fetchone("SELECT COUNT(*) AS n FROM article")["n"]

    def list_articles(self) -> list[StoredArticle]:
        rows = self.fetchall("SELECT * FROM article ORDER BY id")
        return [StoredArticle.from_row(row) for row in rows]

    def delete_by_id(self, article_id: int) -> int:
        cur = self.execute("DELETE FROM article WHERE id = ?", (article_id,))
        self.commit()
        return cur.rowcount

    def clear(self) -> int:
        cur = self.execute("DELETE FROM article")
        self.commit()
        return cur.rowcount


# =============================================================================
# Browser Sessions
# =============================================================================
# Discovery and extraction only sequence these calls, so tests can drive them
# with a fake browser instead of a real engine.


class Element(Protocol):
    async def query(self, selector: str) -> Optional["Element"]: ...

    async def text(self) -> str: ...

    async def attribute(self, name: str) -> Optional[str]: ...


class Page(Protocol):
    async def goto(self, url: str): ...

    async def wait_for_load(self, state: str = "domcontentloaded"): ...

    async def inject_script(self, url: str): ...

    async def evaluate(self, script: str): ...

    async def query_all(self, selector: str) -> list[Element]: ...


class Session(Protocol):
    async def new_page(self) -> Page: ...

    async def close(self): ...


class Browser(Protocol):
    async def launch(self) -> Session: ...


class PlaywrightElement:
    def __init__(self, handle):
        self._handle = handle

    async def query(self, selector: str) -> Optional["PlaywrightElement"]:
        try:
            handle = await self._handle.query_selector(selector)
        except PlaywrightTimeoutError as e:
            raise ExtractionTimeout(f"timed out querying {selector}") from e
        except PlaywrightError as e:
            raise NavigationError(f"could not query {selector}: {e.message}") from e
        return PlaywrightElement(handle) if handle else None

    async def text(self) -> str:
        try:
            return await self._handle.text_content() or ""
        except PlaywrightTimeoutError as e:
            raise ExtractionTimeout("timed out reading element text") from e
        except PlaywrightError as e:
            raise NavigationError(f"could not read element text: {e.message}") from e

    async def attribute(self, name: str) -> Optional[str]:
        try:
            return await self._handle.get_attribute(name)
        except PlaywrightTimeoutError as e:
            raise ExtractionTimeout(f"timed out reading {name}") from e
        except PlaywrightError as e:
            raise NavigationError(f"could not read {name}: {e.message}") from e


class PlaywrightPage:
    def __init__(self, page):
        self._page = page

    async def goto(self, url: str):
        try:
            await self._page.goto(url)
        except PlaywrightTimeoutError as e:
            raise ExtractionTimeout(f"timed out loading {url}") from e
        except PlaywrightError as e:
            raise NavigationError(f"could not goto {url}: {e.message}") from e

    async def wait_for_load(self, state: str = "domcontentloaded"):
        try:
            await self._page.wait_for_load_state(state)
        except PlaywrightTimeoutError as e:
            raise ExtractionTimeout(f"timed out waiting for {state}") from e
        except PlaywrightError as e:
            raise NavigationError(f"page never reached {state}: {e.message}") from e

    async def inject_script(self, url: str):
        try:
            await self._page.add_script_tag(url=url)
        except PlaywrightError as e:
            raise ScriptError(f"could not inject script {url}: {e.message}") from e

    async def evaluate(self, script: str):
        try:
            return await self._page.evaluate(script)
        except PlaywrightTimeoutError as e:
            raise ExtractionTimeout("timed out evaluating script") from e
        except PlaywrightError as e:
            raise ScriptError(f"script evaluation failed: {e.message}") from e

    async def query_all(self, selector: str) -> list[PlaywrightElement]:
        try:
            handles = await self._page.query_selector_all(selector)
        except PlaywrightTimeoutError as e:
            raise ExtractionTimeout(f"timed out querying {selector}") from e
        except PlaywrightError as e:
            raise NavigationError(f"could not query {selector}: {e.message}") from e
        return [PlaywrightElement(h) for h in handles]


class PlaywrightSession:
    def __init__(self, playwright, browser, nav_timeout_ms: int):
        self._playwright = playwright
        self._browser = browser
        self._nav_timeout_ms = nav_timeout_ms

    async def new_page(self) -> PlaywrightPage:
        try:
            page = await self._browser.new_page()
        except PlaywrightError as e:
            raise BrowserLaunchError(f"could not create page: {e.message}") from e
        page.set_default_timeout(self._nav_timeout_ms)
        return PlaywrightPage(page)

    async def close(self):
        try:
            await self._browser.close()
        finally:
            await self._playwright.stop()


class PlaywrightBrowser:
    """Launches one headless browser (and playwright driver) per session."""

    def __init__(self, engine: str = DEFAULT_BROWSER, nav_timeout_ms: int = NAV_TIMEOUT_MS):
        self.engine = engine
        self.nav_timeout_ms = nav_timeout_ms

    async def launch(self) -> PlaywrightSession:
        try:
            playwright = await async_playwright().start()
        except Exception as e:
            raise BrowserLaunchError(f"could not start playwright: {e}") from e
        try:
            browser = await getattr(playwright, self.engine).launch(headless=True)
        except PlaywrightError as e:
            await playwright.stop()
            raise BrowserLaunchError(
                f"could not launch {self.engine}: {e.message}"
            ) from e
        return PlaywrightSession(playwright, browser, self.nav_timeout_ms)


@asynccontextmanager
async def browser_session(browser: Browser):
    """Launch a session and always close it, whatever happens inside."""
    session = await browser.launch()
    try:
        yield session
    finally:
        try:
            await session.close()
        except Exception as e:
            # Never mask the error that got us here
            log.warning(f"[browser] could not close browser session: {e}")


# =============================================================================
# Link Discovery
# =============================================================================


async def discover_articles(
    browser: Browser,
    index_url: str = DEFAULT_INDEX_URL,
    card_selector: str = DEFAULT_CARD_SELECTOR,
    title_selector: str = DEFAULT_TITLE_SELECTOR,
) -> list[Article]:
    """List article candidates on the index page, in document order."""
    log.info(f"[discovery] visiting {index_url}")
    articles = []
    try:
        async with browser_session(browser) as session:
            page = await session.new_page()
            await page.goto(index_url)
            cards = await page.query_all(card_selector)
            for card in cards:
                href = await card.attribute("href")
                if not href:
                    log.warning("[discovery] skipping card without href")
                    continue
                title_el = await card.query(title_selector)
                title = (await title_el.text()).strip() if title_el else ""
                articles.append(Article(title=title or href, url=href))
    except ReaderError as e:
        raise DiscoveryError(f"could not discover articles on {index_url}: {e}") from e

    log.info(f"[discovery] found {len(articles)} articles")
    return articles


# =============================================================================
# Content Extraction
# =============================================================================

EXTRACT_SCRIPT = """
() => {
    const article = new Readability(document).parse();
    return article ? article.content : "";
}
"""


async def extract_article(
    browser: Browser,
    store: ArticleStore,
    url: str,
    script_url: str,
    base_url: str = DEFAULT_INDEX_URL,
) -> StoredArticle:
    """Load one article, run Readability on it and persist the content.

    ``url`` is the key the article was discovered under; relative URLs are
    resolved against ``base_url`` for navigation only.
    """
    target = urljoin(base_url, url)
    start = time.time()

    async with browser_session(browser) as session:
        page = await session.new_page()
        await page.goto(target)
        await page.wait_for_load("domcontentloaded")
        await page.inject_script(script_url)
        html = await page.evaluate(EXTRACT_SCRIPT)

    if not html or not str(html).strip():
        raise ExtractionEmpty(f"no readable content found at {target}")
    html = str(html)

    stored = store.get_by_url(url)
    if store.update_html(stored.id, html) == 0:
        raise NotFound(f"article {stored.id} disappeared before it could be updated")

    duration_ms = (time.time() - start) * 1000
    log.info(f"[extract] done {stored.id} ({url}) [{duration_ms:.0f}ms]")
    return replace(stored, html=html)


# =============================================================================
# Orchestration
# =============================================================================


class Reader:
    """Owns the article list and decides when discovery/extraction run."""

    def __init__(self, store: ArticleStore, browser: Browser, settings: Settings):
        self.store = store
        self.browser = browser
        self.settings = settings
        self._articles: list[StoredArticle] = []
        self._articles_lock = threading.Lock()
        self._populated = False
        self._populate_lock = asyncio.Lock()
        self._inflight: dict[str, asyncio.Task] = {}

    @property
    def populated(self) -> bool:
        return self._populated

    @property
    def articles(self) -> list[StoredArticle]:
        with self._articles_lock:
            return list(self._articles)

    def _set_articles(self, articles: list[StoredArticle]):
        with self._articles_lock:
            self._articles = list(articles)

    def _replace_article(self, article: StoredArticle):
        with self._articles_lock:
            for i, existing in enumerate(self._articles):
                if existing.id == article.id:
                    self._articles[i] = article
                    return
            self._articles.append(article)

    async def _discover(self) -> list[Article]:
        return await discover_articles(
            self.browser,
            self.settings.index_url,
            self.settings.card_selector,
            self.settings.title_selector,
        )

    async def ensure_populated(self) -> list[StoredArticle]:
        """Run the cold-start protocol once per process.

        An empty store triggers discovery and the discovered links are
        inserted; a populated store is loaded as is. A failed discovery leaves
        the reader unpopulated so the next call tries again.
        """
        async with self._populate_lock:
            if not self._populated:
                if self.store.count() == 0:
                    log.info("[discovery] article store is empty, discovering...")
                    candidates = await self._discover()
                    for article in candidates:
                        self.store.add(article)
                    if not candidates:
                        log.warning("[discovery] index page listed no articles")
                self._set_articles(self.store.list_articles())
                self._populated = True
                log.info(f"[store] loaded {len(self._articles)} articles")
        return self.articles

    async def rediscover(self) -> list[StoredArticle]:
        """Discover again and merge new links into the store, keeping extracted html."""
        async with self._populate_lock:
            candidates = await self._discover()
            for article in candidates:
                self.store.add(article)
            self._set_articles(self.store.list_articles())
            self._populated = True
        log.info(f"[discovery] store now holds {len(self._articles)} articles")
        return self.articles

    async def get_article(self, url: str, refresh: bool = False) -> StoredArticle:
        """Return the article for ``url``, extracting its content if needed.

        Concurrent calls for the same URL share one extraction; every caller
        gets the result of its own URL back.
        """
        stored = self.store.get_by_url(url)
        if stored.extracted and not refresh:
            log.info(f"[extract] cached {stored.id} ({url})")
            return stored

        task = self._inflight.get(url)
        if task is None:
            task = asyncio.ensure_future(self._extract(url))
            self._inflight[url] = task
            task.add_done_callback(lambda t: self._extraction_done(url, t))
        else:
            log.info(f"[extract] joining in-flight extraction of {url}")
        # One impatient client must not cancel the extraction others wait on
        return await asyncio.shield(task)

    def _extraction_done(self, url: str, task: asyncio.Task):
        if self._inflight.get(url) is task:
            del self._inflight[url]
        if not task.cancelled() and task.exception() is not None:
            log.warning(f"[extract] failed {url}: {task.exception()}")

    async def _extract(self, url: str) -> StoredArticle:
        try:
            article = await asyncio.wait_for(
                extract_article(
                    self.browser,
                    self.store,
                    url,
                    self.settings.script_url,
                    self.settings.index_url,
                ),
                timeout=self.settings.extract_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExtractionTimeout(
                f"extraction of {url} took longer than {self.settings.extract_timeout:.0f}s"
            ) from e
        self._replace_article(article)
        return article


# =============================================================================
# HTTP Surface
# =============================================================================


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log one line per page or fragment request; static assets stay quiet."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith("/public/"):
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)
        duration_ms = (time.time() - start_time) * 1000

        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        log.info(f"[http] {request.method} {target} {response.status_code} {duration_ms:.0f}ms")
        return response


def create_app(reader: Reader, rediscover: bool = False) -> FastAPI:
    templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not READABILITY_JS.exists() and not reader.settings.script_url_override:
            log.warning(f"{READABILITY_JS} not found, extraction will fail")
        try:
            if rediscover:
                await reader.rediscover()
            else:
                await reader.ensure_populated()
        except ReaderError as e:
            # Serve anyway; the article list retries discovery on the next request
            log.error(f"[discovery] {type(e).__name__}: {e}")
        yield
        log.info("Shutting down...")

    app = FastAPI(lifespan=lifespan)
    app.state.reader = reader
    app.add_middleware(RequestLoggingMiddleware)
    app.mount("/public", StaticFiles(directory=str(PUBLIC_DIR)), name="public")

    @app.exception_handler(ReaderError)
    async def reader_error_handler(request: Request, exc: ReaderError):
        if exc.status_code >= 500:
            log.error(f"{request.url.path}: {type(exc).__name__}: {exc}")
        return templates.TemplateResponse(
            request,
            "error.html",
            {"error": exc, "kind": type(exc).__name__},
            status_code=exc.status_code,
        )

    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request):
        return templates.TemplateResponse(
            request, "page.html", {"articles": reader.articles}
        )

    @app.get("/get-articles", response_class=HTMLResponse)
    async def get_articles(request: Request):
        articles = reader.articles
        if not reader.populated:
            articles = await reader.ensure_populated()
        return templates.TemplateResponse(
            request, "article_list.html", {"articles": articles}
        )

    @app.get("/get-article", response_class=HTMLResponse)
    async def get_article(
        request: Request,
        url: str = Query(..., min_length=1),
        refresh: bool = False,
    ):
        article = await reader.get_article(url, refresh=refresh)
        return templates.TemplateResponse(
            request, "article.html", {"article": article, "content": article.html}
        )

    return app


# =============================================================================
# Main
# =============================================================================


async def main_async(args, settings: Settings):
    store = ArticleStore(settings.db_path)
    store.init()
    log.info("Db init successful")

    # Handle reset - clears all articles so the next start discovers again
    if args.reset:
        deleted = store.clear()
        log.info(f"Reset complete - {deleted} articles deleted.")
        return

    reader = Reader(store, PlaywrightBrowser(settings.browser, settings.nav_timeout_ms), settings)
    app = create_app(reader, rediscover=args.rediscover)

    host = "0.0.0.0" if args.public else "127.0.0.1"
    log.info(f"Listening on http://{host}:{settings.port}")

    import uvicorn

    config = uvicorn.Config(
        app,
        host=host,
        port=settings.port,
        log_level="info",
        log_config=None,
        access_log=False,
    )
    server = uvicorn.Server(config)
    await server.serve()


def main():
    setup_logging()
    load_env_file(BASE_DIR / ".env")

    parser = argparse.ArgumentParser(description="Sporza read-it-later cache")
    parser.add_argument("--port", type=int, default=None, help="Server port")
    parser.add_argument(
        "--public", action="store_true", help="Bind to 0.0.0.0 (all interfaces)"
    )
    parser.add_argument(
        "--rediscover",
        action="store_true",
        help="Discover articles again before serving (keeps extracted content)",
    )
    parser.add_argument(
        "--reset", action="store_true", help="Delete all cached articles and exit"
    )
    args = parser.parse_args()

    try:
        settings = Settings.from_env()
    except ConfigError as e:
        log.critical(str(e))
        sys.exit(1)
    if args.port is not None:
        settings.port = args.port

    try:
        asyncio.run(main_async(args, settings))
    except PersistenceError as e:
        log.critical(f"error setting up db connection: {e}")
        sys.exit(1)
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass


if __name__ == "__main__":
    main()
