from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


def pytest_sessionstart(session) -> None:
    # Ensure project root is importable for tests
    root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(root))


INDEX_URL = "https://sporza.test/nl/pas-verschenen/"
CARD = ".sw-card-module-card"
TITLE = ".sw-title-module-title"


class FakeElement:
    def __init__(self, text="", attrs=None, children=None):
        self._text = text
        self.attrs = attrs or {}
        self.children = children or {}

    async def query(self, selector):
        return self.children.get(selector)

    async def text(self):
        return self._text

    async def attribute(self, name):
        return self.attrs.get(name)


def card(title, href):
    """A card element shaped like the ones on the Sporza index page."""
    attrs = {"href": href} if href is not None else {}
    children = {TITLE: FakeElement(text=title)} if title is not None else {}
    return FakeElement(attrs=attrs, children=children)


class FakePage:
    def __init__(self, browser):
        self.browser = browser
        self.url = None

    async def goto(self, url):
        self.browser.calls.append(("goto", url))
        error = self.browser.goto_errors.get(url)
        if error is not None:
            raise error
        self.url = url

    async def wait_for_load(self, state="domcontentloaded"):
        self.browser.calls.append(("wait_for_load", state))

    async def inject_script(self, url):
        self.browser.calls.append(("inject_script", url))

    async def evaluate(self, script):
        self.browser.calls.append(("evaluate", self.url))
        if self.browser.evaluate_error is not None:
            raise self.browser.evaluate_error
        delay = self.browser.delays.get(self.url, 0)
        if delay:
            await asyncio.sleep(delay)
        return self.browser.contents.get(self.url, "")

    async def query_all(self, selector):
        self.browser.calls.append(("query_all", selector))
        return list(self.browser.cards.get(selector, []))


class FakeSession:
    def __init__(self, browser):
        self.browser = browser

    async def new_page(self):
        return FakePage(self.browser)

    async def close(self):
        self.browser.closed += 1


class FakeBrowser:
    """In-memory stand-in for PlaywrightBrowser, following the same contract."""

    def __init__(self, cards=None, contents=None, delays=None):
        self.cards = {CARD: list(cards or [])}
        self.contents = dict(contents or {})
        self.delays = dict(delays or {})
        self.goto_errors = {}
        self.evaluate_error = None
        self.launch_error = None
        self.launched = 0
        self.closed = 0
        self.calls = []

    async def launch(self):
        if self.launch_error is not None:
            raise self.launch_error
        self.launched += 1
        return FakeSession(self)

    def visits(self, url):
        return sum(1 for call in self.calls if call == ("goto", url))


@pytest.fixture
def settings(tmp_path):
    from sporza_new import Settings

    return Settings(
        db_path=tmp_path / "articles.db",
        index_url=INDEX_URL,
        extract_timeout=5,
        port=3333,
    )


@pytest.fixture
def store(settings):
    from sporza_new import ArticleStore

    s = ArticleStore(settings.db_path)
    s.init()
    yield s
    s.close()


@pytest.fixture
def browser():
    return FakeBrowser(
        cards=[card("Morning Briefing", "/a/1"), card("Weather Update", "/a/2")],
        contents={"https://sporza.test/a/1": "<p>Content</p>"},
    )
