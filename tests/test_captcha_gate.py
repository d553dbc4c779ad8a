import pytest

from captcha_gate import CaptchaGate, GateState
from conftest import FakeDriver, FakeElement, FakePage, make_settings
from errors import ChallengeTimeoutError


RECAPTCHA = 'iframe[src*="recaptcha"]'


class ClearingDriver(FakeDriver):
    """
    Shows a challenge title for the first `challenged_checks` title reads
    """

    def __init__(self, challenged_checks):
        super().__init__([FakePage("https://example.org/x")])
        self.open("https://example.org/x")
        self.challenged_checks = challenged_checks
        self.title_reads = 0

    async def title(self):
        self.title_reads += 1
        if self.title_reads <= self.challenged_checks:
            return "Security Check"
        return "Lesson"


@pytest.mark.asyncio
async def test_hidden_widget_is_not_a_challenge(settings):
    page = FakePage("https://example.org/x", {RECAPTCHA: [FakeElement(box=None), FakeElement(box={"width": 0, "height": 0})]})
    driver = FakeDriver([page])
    driver.open(page.url)

    assert await CaptchaGate(settings).detect(driver) is None


@pytest.mark.asyncio
async def test_visible_widget_is_a_challenge(settings):
    page = FakePage("https://example.org/x", {RECAPTCHA: [FakeElement()]})
    driver = FakeDriver([page])
    driver.open(page.url)

    assert await CaptchaGate(settings).detect(driver) == f"selector {RECAPTCHA}"


@pytest.mark.asyncio
async def test_detects_challenge_title_and_text(settings):
    gate = CaptchaGate(settings)
    driver = FakeDriver([
        FakePage("https://example.org/t", title="Security Check"),
        FakePage("https://example.org/b", body="Please verify you are not a robot to continue"),
        FakePage("https://example.org/ok", title="Bereishit", body="Download this MP3"),
    ])

    driver.open("https://example.org/t")
    assert (await gate.detect(driver)).startswith("title")
    driver.open("https://example.org/b")
    assert (await gate.detect(driver)).startswith("text")
    driver.open("https://example.org/ok")
    assert await gate.detect(driver) is None


@pytest.mark.asyncio
async def test_clears_after_human_solves_it(settings):
    progress = []
    gate = CaptchaGate(settings, progress_cb=lambda waited, max_wait: progress.append(waited))
    driver = ClearingDriver(challenged_checks=3)

    state = await gate.check(driver, "https://example.org/x")

    assert state is GateState.CLEAR
    assert driver.title_reads == 4
    assert progress


@pytest.mark.asyncio
async def test_times_out_when_never_solved(settings):
    gate = CaptchaGate(settings)
    driver = ClearingDriver(challenged_checks=1000)

    assert await gate.check(driver, "https://example.org/x") is GateState.ABANDONED
    with pytest.raises(ChallengeTimeoutError):
        await gate.pass_through(driver, "https://example.org/x")


@pytest.mark.asyncio
async def test_headless_abandons_without_waiting(tmp_path):
    gate = CaptchaGate(make_settings(tmp_path, headless=True, captcha_max_wait=1000))
    driver = ClearingDriver(challenged_checks=1000)

    assert await gate.check(driver, "https://example.org/x") is GateState.ABANDONED
    assert driver.title_reads == 1
