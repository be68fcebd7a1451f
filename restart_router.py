import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from playwright.async_api import (
    async_playwright,
    Page,
    Browser,
    ElementHandle,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    Error as PlaywrightError
)

logger = logging.getLogger(__name__)

# --- Browser ---
BROWSER_ARGS: List[str] = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-web-security", # Router UI mixes legacy frames and origins
    "--disable-features=IsolateOrigins,site-per-process",
]
VIEWPORT = {"width": 1280, "height": 800}
NAVIGATION_TIMEOUT_MS: int = 30000
SELECTOR_TIMEOUT_MS: int = 5000

# --- Selectors (status page served at RgSwInfo.asp) ---
USERNAME_SELECTORS: Sequence[str] = ('input[name="username"]', 'input[type="text"]', 'input:not([type])')
PASSWORD_SELECTORS: Sequence[str] = ('input[type="password"]', 'input[name="password"]')
LOGIN_TEXT_SELECTOR: str = 'button, input[type="submit"], a'
LOGIN_BUTTON_SELECTORS: Sequence[str] = (
    'input[type="submit"]',
    'button[type="submit"]',
    'input[value="Login"]',
    '.login-btn',
    '#login-btn',
)
STATUS_LINK_SELECTOR: str = 'a[href="RgSwInfo.asp"]'
REBOOT_FORM_SELECTOR: str = 'form[action="/goform/RgSwInfo"]'
REBOOT_BUTTON_SELECTOR: str = 'input[type="Submit"][value="Reboot"]'
CONFIRM_BUTTON_SELECTOR: str = 'input[value="OK"], button[value="OK"]'

# --- Timing (seconds) ---
PAGE_LOAD_SETTLE = 2
LOGIN_SETTLE = 5
STATUS_SETTLE = 2
CONFIRM_SETTLE = 1
PROGRESS_INTERVAL = 5
CONNECTION_LOST_INTERVAL = 10
RECOVERY_COOLDOWN = 30
MAX_PROGRESS_ATTEMPTS = 30

# --- Screenshots ---
LOGIN_SCREENSHOT = "router-login.png"
LOGGED_IN_SCREENSHOT = "router-logged-in.png"
STATUS_SCREENSHOT = "router-status.png"
PROGRESS_SCREENSHOT = "router-reboot-progress-{attempt}.png"
COMPLETE_SCREENSHOT = "router-reboot-complete.png"
BACK_ONLINE_SCREENSHOT = "router-back-online.png"
ERROR_SCREENSHOT = "router-error.png"


@dataclass(frozen=True)
class RouterConfig:
    url: str
    username: str
    password: str

    def __repr__(self) -> str:
        return f"RouterConfig(url={self.url!r}, username={self.username!r}, password='***')"


class Phase(Enum):
    INIT = "init"
    LAUNCH_SESSION = "launch session"
    LOGIN = "login"
    NAVIGATE_TO_STATUS = "navigate to status"
    SUBMIT_REBOOT = "submit reboot"
    MONITOR_REBOOT = "monitor reboot"
    VERIFY_RECOVERY = "verify recovery"
    CLEANUP = "cleanup"


@dataclass(frozen=True)
class PhaseResult:
    phase: Phase
    ok: bool
    reason: str = ""

    @classmethod
    def success(cls, phase: Phase) -> "PhaseResult":
        return cls(phase, True)

    @classmethod
    def failure(cls, phase: Phase, reason: str) -> "PhaseResult":
        return cls(phase, False, reason)


class ResetOutcome(Enum):
    COMPLETED = "completed"
    ABORTED = "aborted" # Reboot was never sent
    FAILED = "failed"
    SKIPPED = "skipped" # Another run holds the overlap lock


@dataclass
class ResetReport:
    outcome: ResetOutcome = ResetOutcome.FAILED
    phases: List[PhaseResult] = field(default_factory=list)
    reboot_confirmed: bool = False

    def record(self, result: PhaseResult) -> PhaseResult:
        self.phases.append(result)
        return result

    def result_for(self, phase: Phase) -> Optional[PhaseResult]:
        for result in self.phases:
            if result.phase is phase:
                return result
        return None


# --- Helpers ---

async def delay(seconds: float) -> None:
    await asyncio.sleep(seconds)


async def save_screenshot(page: Page, name: str, artifacts_dir: str = ".") -> bool:
    """Best-effort full page screenshot. Never raises."""
    path = os.path.join(artifacts_dir, name)
    try:
        await page.screenshot(path=path, full_page=True)
    except Exception as e:
        logger.warning(f"Failed to save screenshot {path}: {e}")
        return False
    logger.info(f"Saved screenshot as {path}")
    return True


async def find_element_by_text(page: Page, selector: str, text: str) -> Optional[ElementHandle]:
    """First element matching `selector` whose text contains `text`, ignoring case."""
    for element in await page.query_selector_all(selector):
        content = await element.text_content()
        if content and text.lower() in content.lower():
            return element
    return None


async def find_first(page: Page, selectors: Sequence[str]) -> Optional[ElementHandle]:
    for selector in selectors:
        element = await page.query_selector(selector)
        if element:
            return element
    return None


async def fill_field(page: Page, selectors: Sequence[str], value: str, label: str) -> bool:
    try:
        await page.wait_for_selector(", ".join(selectors), timeout=SELECTOR_TIMEOUT_MS)
    except PlaywrightTimeoutError:
        logger.warning(f"{label} field not found with standard selectors")
        return False

    element = await find_first(page, selectors)
    if not element:
        logger.warning(f"{label} field disappeared before it could be filled")
        return False
    await element.fill(value)
    return True


async def find_login_button(page: Page) -> Optional[ElementHandle]:
    login_button = await find_element_by_text(page, LOGIN_TEXT_SELECTOR, "login")
    if not login_button:
        login_button = await find_first(page, LOGIN_BUTTON_SELECTORS)
    return login_button


def first_open_page(browser: Browser) -> Optional[Page]:
    for context in browser.contexts:
        if context.pages:
            return context.pages[0]
    return None


# --- Session ---

async def launch_session(playwright: Playwright) -> Browser:
    logger.info("Launching headless browser (Chromium)...")
    return await playwright.chromium.launch(headless=True, args=BROWSER_ARGS)


async def open_page(browser: Browser) -> Page:
    context = await browser.new_context(viewport=VIEWPORT, ignore_https_errors=True)
    page = await context.new_page()
    # Playwright dismisses dialogs by default, which would cancel a confirm() guarding the reboot
    page.on("dialog", lambda dialog: asyncio.create_task(dialog.accept()))
    return page


# --- Phases ---

async def login(page: Page, config: RouterConfig, artifacts_dir: str = ".") -> PhaseResult:
    logger.info(f"Navigating to router login page: {config.url}")
    await page.goto(config.url, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT_MS)

    logger.info("Waiting for page to load...")
    await delay(PAGE_LOAD_SETTLE)
    await save_screenshot(page, LOGIN_SCREENSHOT, artifacts_dir)

    logger.info("Entering credentials...")
    await fill_field(page, USERNAME_SELECTORS, config.username, "Username")
    await fill_field(page, PASSWORD_SELECTORS, config.password, "Password")

    login_button = await find_login_button(page)
    if login_button:
        await login_button.click()
        logger.info("Clicked login button")
    else:
        logger.info("Could not find login button, trying Enter key...")
        await page.keyboard.press("Enter")

    logger.info("Waiting for login to complete...")
    await delay(LOGIN_SETTLE)
    await save_screenshot(page, LOGGED_IN_SCREENSHOT, artifacts_dir)

    # No positive success marker exists across firmwares; a lingering password box is the best hint
    if await find_first(page, PASSWORD_SELECTORS):
        logger.warning("Password field still present after login, login may have failed")
    return PhaseResult.success(Phase.LOGIN)


async def navigate_to_status(page: Page, artifacts_dir: str = ".") -> PhaseResult:
    logger.info("Looking for Status link...")
    status_link = await page.query_selector(STATUS_LINK_SELECTOR)
    if not status_link:
        status_link = await find_element_by_text(page, "a", "Status")

    if not status_link:
        logger.error("Could not find Status link")
        logger.info(f"Current page content: {await page.content()}")
        return PhaseResult.failure(Phase.NAVIGATE_TO_STATUS, "status link not found")

    await status_link.click()
    await delay(STATUS_SETTLE)
    logger.info("Navigated to Status page")
    await save_screenshot(page, STATUS_SCREENSHOT, artifacts_dir)
    return PhaseResult.success(Phase.NAVIGATE_TO_STATUS)


async def submit_reboot(page: Page) -> PhaseResult:
    logger.info("Looking for reboot button...")
    try:
        await page.wait_for_selector(REBOOT_FORM_SELECTOR, timeout=SELECTOR_TIMEOUT_MS)
    except PlaywrightTimeoutError:
        logger.warning("Reboot form not found")

    reboot_button = await page.query_selector(REBOOT_BUTTON_SELECTOR)
    if not reboot_button:
        logger.error("Could not find reboot button")
        logger.info(f"Current page HTML: {await page.content()}")
        return PhaseResult.failure(Phase.SUBMIT_REBOOT, "reboot button not found")

    await reboot_button.click()
    logger.info("Clicked reboot button")
    await delay(CONFIRM_SETTLE)

    try:
        confirm_button = await page.query_selector(CONFIRM_BUTTON_SELECTOR)
        if confirm_button:
            await confirm_button.click()
            logger.info("Confirmed reboot action")
    except PlaywrightError as e:
        logger.info(f"No confirmation dialog found or not needed: {e}")

    logger.info("Reboot command sent successfully")
    return PhaseResult.success(Phase.SUBMIT_REBOOT)


async def monitor_reboot_progress(page: Page, artifacts_dir: str = ".") -> bool:
    """
    Poll the page while the router reboots.

    Returns True as soon as the page reports completion ("100%" or
    "reboot complete"), False after MAX_PROGRESS_ATTEMPTS polls without it.
    Playwright errors are expected here, the router drops off the network
    mid-reboot, and only lengthen the wait before the next poll.
    """
    logger.info("Monitoring reboot progress...")

    for attempt in range(MAX_PROGRESS_ATTEMPTS):
        try:
            await page.screenshot(
                path=os.path.join(artifacts_dir, PROGRESS_SCREENSHOT.format(attempt=attempt)),
                full_page=True,
            )
            logger.info(f"Saved reboot progress screenshot {attempt}")

            content = await page.content()
            lowered = content.lower()
            if "100%" in content or "reboot complete" in lowered:
                logger.info("Reboot completed successfully!")
                await save_screenshot(page, COMPLETE_SCREENSHOT, artifacts_dir)
                return True
            elif "rebooting" in lowered or "please wait" in lowered:
                logger.info("Router is still rebooting...")

            await delay(PROGRESS_INTERVAL)

        except PlaywrightError as e:
            logger.info(f"Connection lost (this is expected during reboot): {e}")
            await delay(CONNECTION_LOST_INTERVAL)

    logger.warning(f"Reboot monitoring timed out after {MAX_PROGRESS_ATTEMPTS} attempts")
    return False


async def verify_recovery(page: Page, config: RouterConfig, artifacts_dir: str = ".") -> PhaseResult:
    logger.info("Waiting for router to come back online...")
    await delay(RECOVERY_COOLDOWN)

    try:
        await page.goto(config.url, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT_MS)
    except PlaywrightError as e:
        logger.warning(f"Could not verify if router is back online: {e}")
        return PhaseResult.failure(Phase.VERIFY_RECOVERY, str(e))

    await save_screenshot(page, BACK_ONLINE_SCREENSHOT, artifacts_dir)
    logger.info("Router is back online!")
    return PhaseResult.success(Phase.VERIFY_RECOVERY)


# --- Driver ---

async def drive_reset(
    config: RouterConfig,
    launch: Callable[[], Awaitable[Browser]],
    artifacts_dir: str = "."
) -> ResetReport:
    """
    Run every phase of one reset in order against a freshly launched browser.

    Phases only move forward. A phase reporting failure before the reboot was
    sent aborts the run, any exception ends it as FAILED, and in every case the
    browser is closed exactly once before the report is returned.
    """
    report = ResetReport()
    browser: Optional[Browser] = None
    phase = Phase.INIT

    try:
        if not config.password:
            logger.error("Router password missing, not launching browser")
            report.record(PhaseResult.failure(phase, "router password missing"))
            return report
        report.record(PhaseResult.success(phase))

        phase = Phase.LAUNCH_SESSION
        browser = await launch()
        page = await open_page(browser)
        report.record(PhaseResult.success(phase))

        phase = Phase.LOGIN
        report.record(await login(page, config, artifacts_dir))

        phase = Phase.NAVIGATE_TO_STATUS
        result = report.record(await navigate_to_status(page, artifacts_dir))
        if result.ok:
            phase = Phase.SUBMIT_REBOOT
            result = report.record(await submit_reboot(page))
        if not result.ok:
            logger.warning(f"Reboot not sent: {result.reason}")
            report.outcome = ResetOutcome.ABORTED
            return report

        phase = Phase.MONITOR_REBOOT
        report.reboot_confirmed = await monitor_reboot_progress(page, artifacts_dir)
        if report.reboot_confirmed:
            report.record(PhaseResult.success(phase))
        else:
            report.record(PhaseResult.failure(phase, "timed out"))

        phase = Phase.VERIFY_RECOVERY
        report.record(await verify_recovery(page, config, artifacts_dir))
        report.outcome = ResetOutcome.COMPLETED

    except Exception as e:
        logger.error(f"Error during router reset ({phase.value}): {e}")
        report.record(PhaseResult.failure(phase, str(e)))
        report.outcome = ResetOutcome.FAILED
        if browser:
            error_page = first_open_page(browser)
            if error_page:
                await save_screenshot(error_page, ERROR_SCREENSHOT, artifacts_dir)

    finally:
        if browser:
            logger.info("Closing browser...")
            try:
                await browser.close()
                report.record(PhaseResult.success(Phase.CLEANUP))
            except PlaywrightError as e:
                logger.warning(f"Failed to close browser cleanly: {e}")
                report.record(PhaseResult.failure(Phase.CLEANUP, str(e)))
        else:
            report.record(PhaseResult.success(Phase.CLEANUP))

    return report


async def reset_router(config: RouterConfig, artifacts_dir: str = ".") -> ResetReport:
    """
    Log into the router's web UI, press Reboot on the Status page, follow the
    reboot until the UI reports completion and check the router is reachable
    again, using Playwright in headless mode.
    """
    os.makedirs(artifacts_dir, exist_ok=True)
    async with async_playwright() as p:
        return await drive_reset(config, lambda: launch_session(p), artifacts_dir)
