import pytest

from errors import TransientNavigationError
from page_driver import PageDriver
from run_context import RunContext, Settings


BASE = "https://example.org"
VISIBLE_BOX = {"x": 0, "y": 0, "width": 300, "height": 80}


class FakeElement:
    """
    An element handle. Activating it either opens `target` or calls `on_activate(driver)`.
    """

    def __init__(self, text="", attrs=None, box=VISIBLE_BOX, target=None, on_activate=None):
        self.text = text
        self.attrs = attrs or {}
        self.box = box
        self.target = target
        self.on_activate = on_activate


class FakePage:
    def __init__(self, url, elements=None, title="", body="", html=None):
        self.url = url
        self.elements = elements or {}
        self.title = title
        self.body = body
        self.html = html if html is not None else f"<html><body>{body}</body></html>"


def link(href, text=""):
    return FakeElement(text=text, attrs={"href": href})


class FakeDriver(PageDriver):
    """
    In-memory site graph. Records every navigation and activation.
    """

    def __init__(self, pages=(), failing=()):
        self.pages = {page.url: page for page in pages}
        self.failing = set(failing)
        self.page = FakePage("about:blank")
        self.navigations = []
        self.activations = []
        self.filled = []

    def add(self, page):
        self.pages[page.url] = page
        return page

    def open(self, ref):
        self.page = self.pages.get(ref) or FakePage(ref)

    async def navigate(self, ref):
        self.navigations.append(ref)
        if ref in self.failing:
            raise TransientNavigationError(f"Timeout: {ref}")
        self.open(ref)

    async def find_all(self, pattern):
        return list(self.page.elements.get(pattern, []))

    async def text_of(self, element):
        return element.text

    async def attribute_of(self, element, name):
        return element.attrs.get(name)

    async def bounding_box(self, element):
        return element.box

    async def activate(self, element):
        self.activations.append(element)
        if element.on_activate is not None:
            element.on_activate(self)
        elif element.target is not None:
            self.open(element.target)

    async def fill(self, element, text):
        self.filled.append((element, text))

    async def current_url(self):
        return self.page.url

    async def title(self):
        return self.page.title

    async def body_text(self):
        return self.page.body

    async def content(self):
        return self.page.html


def make_settings(tmp_path, **overrides):
    """
    Settings with the selectors of the fake site and near-zero timings
    """
    options = dict(
        base_url=BASE,
        headless=False,
        max_depth=10,
        max_pages=50,
        delay_between_pages=0,
        delay_between_downloads=0,
        delay_between_records=0,
        wait_for_load=0,
        captcha_poll_interval=0.01,
        captcha_max_wait=0.05,
        captcha_settle_delay=0,
        captcha_progress_interval=0.02,
        retry_attempts=3,
        retry_delay=0,
        download_poll_interval=0.01,
        download_max_wait=0.05,
        static_fallback=False,
        manual_login_prompts=2,
        staging_dir=str(tmp_path / "staging"),
        temp_dir=str(tmp_path / "tmp"),
        selectors={
            "show_more": ("a.more",),
            "leaf_links": ("a.leaf",),
            "download": ("a.dl",),
            "metadata": {
                "title": ("h1.title", "title"),
                "author": ("span.author",),
                "topics": ("a.topic",),
                "podcast": ("a.podcast",),
                "synopsis": ("div.synopsis",),
            },
        },
    )
    options.update(overrides)
    (tmp_path / "staging").mkdir(exist_ok=True)
    (tmp_path / "tmp").mkdir(exist_ok=True)
    return Settings(**options)


def section_page(url, more=(), leaves=()):
    elements = {}
    if more:
        elements["a.more"] = [link(ref) for ref in more]
    if leaves:
        elements["a.leaf"] = [link(ref) for ref in leaves]
    return FakePage(url, elements)


def leaf_page(url, download=None, title=None, nested=(), author=None, topics=()):
    elements = {}
    if download:
        elements["a.dl"] = [link(download, "Download this MP3")]
    if title:
        elements["h1.title"] = [FakeElement(text=title)]
    if author:
        elements["span.author"] = [FakeElement(text=author)]
    if topics:
        elements["a.topic"] = [FakeElement(text=topic) for topic in topics]
    if nested:
        elements["a.leaf"] = [link(ref) for ref in nested]
    return FakePage(url, elements, title=title or "")


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def ctx(settings):
    return RunContext(settings)
