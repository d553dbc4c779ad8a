import abc
import asyncio
import logging
import os

from playwright.async_api import Error as PwError
from playwright.async_api import TimeoutError as PwTimeoutError
from playwright.async_api import async_playwright

import constants
from errors import TransientNavigationError


logger = logging.getLogger(__name__)


class PageDriver(abc.ABC):
    """
    The browser operations the core is allowed to use.
    Elements are opaque handles owned by the driver.
    """

    @abc.abstractmethod
    async def navigate(self, ref):
        """Load ref and wait for it to settle. Raise TransientNavigationError on failure."""

    @abc.abstractmethod
    async def find_all(self, pattern):
        """Return every element matching the CSS pattern, in page order."""

    @abc.abstractmethod
    async def text_of(self, element):
        pass

    @abc.abstractmethod
    async def attribute_of(self, element, name):
        pass

    @abc.abstractmethod
    async def bounding_box(self, element):
        """Return {x, y, width, height} or None when the element is not rendered."""

    @abc.abstractmethod
    async def activate(self, element):
        """Click the element and wait for any navigation it causes to settle."""

    @abc.abstractmethod
    async def fill(self, element, text):
        pass

    @abc.abstractmethod
    async def current_url(self):
        pass

    @abc.abstractmethod
    async def title(self):
        pass

    @abc.abstractmethod
    async def body_text(self):
        pass

    @abc.abstractmethod
    async def content(self):
        """Return the page html."""


class PwDriver(PageDriver):
    """
    Page driver backed by a single Playwright page.
    Downloads started by the page are saved into the staging dir.
    """

    def __init__(self, page, settings):
        self.page = page
        self.settings = settings
        self.staging_dir = settings.staging_dir
        self.page.on("download", self.save_download)

    async def navigate(self, ref):
        logger.info(f"begin req pw {ref}")
        try:
            await self.page.goto(ref, wait_until="networkidle", timeout=constants.pw_req_timeout)
        except PwTimeoutError as errex:
            raise TransientNavigationError(f"Timeout: {ref}") from errex
        except PwError as errex:
            # Navigating straight to a file turns into a download
            if "Download is starting" in str(errex):
                logger.info(f"Navigation became a download: {ref}")
                return
            raise TransientNavigationError(f"Requester error: {errex} {ref}") from errex

        if self.settings.wait_for_load:
            await asyncio.sleep(self.settings.wait_for_load)
        logger.debug(f"end req pw {ref}")

    async def find_all(self, pattern):
        return await self.page.query_selector_all(pattern)

    async def text_of(self, element):
        return await element.inner_text()

    async def attribute_of(self, element, name):
        return await element.get_attribute(name)

    async def bounding_box(self, element):
        return await element.bounding_box()

    async def activate(self, element):
        try:
            await element.click()
        except PwTimeoutError as errex:
            raise TransientNavigationError(f"Click timeout: {self.page.url}") from errex
        except PwError as errex:
            raise TransientNavigationError(f"Click failed: {errex} {self.page.url}") from errex
        try:
            await self.page.wait_for_load_state("networkidle", timeout=constants.pw_settle_timeout)
        except PwTimeoutError:
            logger.debug(f"No settled load state after click: {self.page.url}")
        if self.settings.wait_for_load:
            await asyncio.sleep(self.settings.wait_for_load)

    async def fill(self, element, text):
        await element.fill(text)

    async def current_url(self):
        return self.page.url

    async def title(self):
        return await self.page.title()

    async def body_text(self):
        return await self.page.inner_text("body")

    async def content(self):
        return await self.page.content()

    async def cookies(self):
        """
        Session cookies as a name: value dict, for the static requester
        """
        try:
            browser_cookies = await self.page.context.cookies()
        except PwError as errex:
            raise TransientNavigationError(f"Cant read session cookies: {errex}") from errex
        return {c["name"]: c["value"] for c in browser_cookies}

    async def save_download(self, download):
        """
        Save a finished download into the staging dir.
        Written under a partial name first so pollers never see half a file.
        """
        filename = download.suggested_filename or "download.mp3"
        final_path = os.path.join(self.staging_dir, filename)
        part_path = final_path + ".part"
        try:
            await download.save_as(part_path)
            os.replace(part_path, final_path)
            logger.info(f"Staged download: {final_path}")
        except Exception:
            logger.exception(f"cant save download: {download.url}")


class BrowserSession:
    """
    The Playwright instance, browser, context, and the driver for its page
    """

    def __init__(self, settings):
        self.settings = settings
        self.session = None
        self.brow = None
        self.context = None
        self.driver = None

    async def start(self):
        for each_dir in (self.settings.staging_dir, self.settings.temp_dir):
            if not os.path.exists(each_dir):
                os.makedirs(each_dir)

        logger.info(f"Launching browser {self.settings.headless=}")
        self.session = await async_playwright().start()
        self.brow = await self.session.chromium.launch(
            headless=self.settings.headless, args=list(constants.BROWSER_ARGS)
        )
        self.context = await self.brow.new_context(
            accept_downloads=True,
            user_agent=constants.USER_AGENT_S,
            viewport=constants.VIEWPORT,
        )
        await self.context.add_init_script(constants.STEALTH_SCRIPT)
        page = await self.context.new_page()
        page.set_default_navigation_timeout(constants.pw_req_timeout)
        self.driver = PwDriver(page, self.settings)
        return self.driver

    async def close(self):
        """
        Close the browser sessions
        """
        for name, closer in (("context", self.context), ("brow", self.brow)):
            if closer is None:
                continue
            try:
                await closer.close()
            except Exception:
                logger.exception(f"cant close pw {name}")
        if self.session is not None:
            try:
                await self.session.stop()
            except Exception:
                logger.exception(f"cant stop pw session")
        logger.info(f"Browser session closed")


async def is_visible(driver, element):
    """
    An element only counts as visible if it has a non-empty bounding box
    """
    box = await driver.bounding_box(element)
    if not box:
        return False
    return box.get("width", 0) > 0 and box.get("height", 0) > 0


async def first_element(driver, patterns):
    """
    Return the first element matched by the first pattern that matches anything
    """
    for pattern in patterns:
        try:
            elements = await driver.find_all(pattern)
        except Exception as errex:
            logger.debug(f"Selector failed: {pattern} {errex!r}")
            continue
        if elements:
            return elements[0]
    return None


async def first_match(driver, patterns, extract):
    """
    Try each pattern in order. The first element of a pattern is passed to
    extract; the first non-empty result wins.
    """
    for pattern in patterns:
        try:
            elements = await driver.find_all(pattern)
            if not elements:
                continue
            value = await extract(elements[0])
        except Exception as errex:
            logger.debug(f"Selector failed: {pattern} {errex!r}")
            continue

        if value and value.strip():
            return value.strip()
    return None


async def all_matches(driver, patterns, extract):
    """
    Like first_match, but collect every matching element of the first
    pattern that yields anything.
    """
    for pattern in patterns:
        values = []
        try:
            for element in await driver.find_all(pattern):
                value = await extract(element)
                if value and value.strip():
                    values.append(value.strip())
        except Exception as errex:
            logger.debug(f"Selector failed: {pattern} {errex!r}")
            continue

        if values:
            return values
    return []
