import asyncio
import enum
import logging

import constants
from errors import ChallengeTimeoutError
from page_driver import is_visible


logger = logging.getLogger(__name__)


class GateState(enum.Enum):
    CLEAR = "clear"
    CHALLENGED = "challenged"
    ABANDONED = "abandoned"


class CaptchaGate:
    """
    Runs after every navigation.

    A detected challenge suspends the run while a human solves it in the
    browser window. The page is polled until the challenge is gone or the
    wait runs out. Without a human the page is abandoned immediately.
    """

    def __init__(self, settings, progress_cb=None):
        self.settings = settings
        self.progress_cb = progress_cb
        self.state = GateState.CLEAR

    async def detect(self, driver):
        """
        Return the reason a challenge was detected, or None
        """
        # Visible challenge widgets. Hidden ones are dormant and ignored
        for selector in constants.CHALLENGE_SELECTORS:
            try:
                for element in await driver.find_all(selector):
                    if await is_visible(driver, element):
                        return f"selector {selector}"
            except Exception as errex:
                logger.debug(f"Error in CAPTCHA selector check: {selector} {errex!r}")

        # Challenge pages
        try:
            title = (await driver.title() or "").lower()
            url = (await driver.current_url() or "").lower()
            if any(phrase in title for phrase in constants.CHALLENGE_TITLE_PHRASES):
                return f"title {title}"
            for first, second in constants.CHALLENGE_TITLE_PAIRS:
                if first in title and second in title:
                    return f"title {title}"
            if any(phrase in url for phrase in constants.CHALLENGE_URL_PHRASES):
                return f"url {url}"
        except Exception as errex:
            logger.debug(f"Error in CAPTCHA title check: {errex!r}")

        # Human verification text
        try:
            vis_text = (await driver.body_text() or "").lower()
            for phrase in constants.CHALLENGE_BODY_PHRASES:
                if phrase in vis_text:
                    return f"text {phrase}"
        except Exception as errex:
            logger.debug(f"Error in CAPTCHA text check: {errex!r}")

        return None

    async def check(self, driver, ref):
        """
        Run detection and, if challenged, wait for a human.
        Return the resulting state.
        """
        reason = await self.detect(driver)
        if not reason:
            self.state = GateState.CLEAR
            return self.state

        self.state = GateState.CHALLENGED
        logger.warning(f"CAPTCHA detected ({reason}): {ref}")

        if not self.settings.interactive:
            logger.error(f"Running headless - cannot solve CAPTCHA manually: {ref}")
            self.state = GateState.ABANDONED
            return self.state

        logger.info(f"Please solve the CAPTCHA in the browser window. Checking every {self.settings.captcha_poll_interval}s")
        self.state = await self.wait_for_clear(driver)
        return self.state

    async def wait_for_clear(self, driver):
        """
        Poll until detection comes back negative or the max wait elapses
        """
        max_wait = self.settings.captcha_max_wait
        interval = self.settings.captcha_poll_interval
        next_progress = self.settings.captcha_progress_interval
        waited = 0

        while waited < max_wait:
            await asyncio.sleep(interval)
            waited += interval

            if not await self.detect(driver):
                logger.info(f"CAPTCHA appears to be solved. Continuing ...")
                await asyncio.sleep(self.settings.captcha_settle_delay)
                return GateState.CLEAR

            if waited >= next_progress:
                next_progress += self.settings.captcha_progress_interval
                logger.info(f"Still waiting for CAPTCHA ... ({waited:g}s/{max_wait:g}s)")
                if self.progress_cb:
                    self.progress_cb(waited, max_wait)

        logger.error(f"Timeout waiting for CAPTCHA to be solved")
        return GateState.ABANDONED

    async def pass_through(self, driver, ref):
        """
        Return when the page is clear. Raise ChallengeTimeoutError if abandoned.
        """
        if await self.check(driver, ref) is GateState.ABANDONED:
            raise ChallengeTimeoutError(f"Unresolved CAPTCHA: {ref}")
