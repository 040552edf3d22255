"""Aggregator session management: credential reuse and the browser login state machine.

The login flow is driven through ``LoginDriver`` so the state machine can be
exercised without a browser. ``PlaywrightLoginDriver`` is the production
driver; page discovery is isolated in ``PageLocator``.
"""
from __future__ import annotations

import asyncio
import enum
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from playwright.async_api import Browser, BrowserContext, ElementHandle, Page, Response, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from salesync.common.json_logger import JsonLogger, log_event
from salesync.exceptions import CaptchaLoadTimeout, LoginFailed, PageShapeChanged
from salesync.sources.browser import launch_browser

DEFAULT_LOGIN_URL = "https://app.upseller.com/pt/login"
VCODE_PATH = "/api/vcode"
SESSION_COOKIE_NAME = "JSESSIONID"
SESSION_MAX_AGE = timedelta(hours=24)

MAX_CAPTCHA_ATTEMPTS = 3
CAPTCHA_LOAD_TIMEOUT_SECONDS = 2.0
CAPTCHA_REFRESH_TIMEOUT_SECONDS = 10.0
VERIFICATION_PROMPT_TIMEOUT_SECONDS = 5.0
POST_LOGIN_SETTLE_SECONDS = 3.0
POST_SUBMIT_SETTLE_SECONDS = 1.0
NAV_TIMEOUT_MS = 60_000
SUBMIT_NAV_TIMEOUT_MS = 15_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionCredential:
    cookies: str
    session_id: Optional[str]
    saved_at: datetime

    def age(self, now: datetime) -> timedelta:
        return now - self.saved_at

    def is_fresh(self, now: datetime, max_age: timedelta = SESSION_MAX_AGE) -> bool:
        return self.age(now) < max_age

    @classmethod
    def from_cookies(cls, cookies: Sequence[Dict[str, Any]], *, saved_at: datetime) -> "SessionCredential":
        header = "; ".join(f"{cookie['name']}={cookie['value']}" for cookie in cookies if cookie.get("name"))
        session_id = next(
            (cookie.get("value") for cookie in cookies if cookie.get("name") == SESSION_COOKIE_NAME),
            None,
        )
        return cls(cookies=header, session_id=session_id, saved_at=saved_at)


@dataclass(frozen=True)
class LoginCredentials:
    email: str
    password: str


class SessionState(str, enum.Enum):
    IDLE = "idle"
    FILL_CREDENTIALS = "fill_credentials"
    AWAIT_CAPTCHA = "await_captcha"
    SOLVE_AND_SUBMIT = "solve_and_submit"
    CAPTCHA_REJECTED = "captcha_rejected"
    CHECK_VERIFICATION = "check_verification"
    SUBMIT_CODE = "submit_code"
    SKIP_VERIFICATION = "skip_verification"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class LoginDriver(Protocol):
    async def open_login_page(self) -> None: ...

    async def fill_identity(self, email: str, password: str) -> None: ...

    async def focus_captcha(self) -> None: ...

    async def wait_for_image(self, timeout: float, *, fresh: bool) -> Optional[str]: ...

    async def submit_captcha(self, answer: str) -> None: ...

    async def captcha_rejected(self) -> bool: ...

    async def verification_requested(self, timeout: float) -> bool: ...

    async def request_verification_code(self) -> None: ...

    async def submit_verification_code(self, code: str) -> None: ...

    async def cookies(self) -> List[Dict[str, Any]]: ...


class SessionStore(Protocol):
    async def load_session(self) -> Optional[SessionCredential]: ...

    async def save_session(self, credential: SessionCredential) -> None: ...

    async def clear_session(self) -> None: ...


class CaptchaSolving(Protocol):
    async def solve(self, image_base64: str) -> str: ...


class CodeMailbox(Protocol):
    async def fetch_code(self, *, sent_after: datetime, timeout: float = ...) -> str: ...


class PageLocator:
    """Positional discovery of login-page elements, with fallbacks in order."""

    IDENTITY_SELECTORS = (
        "input.ant-input",
        "input[type='email'], input[type='password']",
        "input:visible",
    )
    CAPTCHA_PLACEHOLDER_SELECTOR = "span.inp_placeholder"
    CAPTCHA_FALLBACK_SELECTORS = (
        "input[placeholder*='captcha' i]",
        "input[placeholder*='verificação' i]",
    )
    LOGIN_BUTTON_SELECTORS = ("button.main_btn.ant-btn-primary", "button.ant-btn-primary[type='submit']")
    CAPTCHA_ERROR_SELECTOR = "div.ant-form-extra span.f_red"
    SEND_CODE_SELECTOR = "button.send_code_btn"
    CODE_INPUT_SELECTOR = "input.inp_code.ant-input"

    async def identity_inputs(self, page: Page) -> List[ElementHandle]:
        for selector in self.IDENTITY_SELECTORS:
            handles = await page.query_selector_all(selector)
            if len(handles) >= 2:
                return handles[:2]
        raise PageShapeChanged("Login inputs not found (expected e-mail and password fields)")

    async def captcha_input(self, page: Page) -> ElementHandle:
        for span in await page.query_selector_all(self.CAPTCHA_PLACEHOLDER_SELECTOR):
            text = (await span.inner_text() or "").upper()
            if "CAPTCHA" not in text:
                continue
            sibling = (await span.evaluate_handle("el => el.previousElementSibling")).as_element()
            if sibling is not None:
                return sibling
        for selector in self.CAPTCHA_FALLBACK_SELECTORS:
            handle = await page.query_selector(selector)
            if handle is not None:
                return handle
        raise PageShapeChanged("CAPTCHA input not found on the login page")

    async def login_button(self, page: Page) -> ElementHandle:
        for selector in self.LOGIN_BUTTON_SELECTORS:
            handle = await page.query_selector(selector)
            if handle is not None:
                return handle
        raise PageShapeChanged("Login button not found on the login page")


class PlaywrightLoginDriver:
    def __init__(
        self,
        *,
        browser: Browser,
        login_url: str,
        logger: JsonLogger,
        locator: PageLocator | None = None,
    ) -> None:
        self._browser = browser
        self._login_url = login_url or DEFAULT_LOGIN_URL
        self.logger = logger
        self._locator = locator or PageLocator()
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._captcha_input: ElementHandle | None = None
        self._image: Optional[str] = None
        # bumped on every pushed image; submit_captcha records the one it answered
        self._image_seq = 0
        self._answered_seq = 0
        self._image_ready = asyncio.Condition()

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("Login page is not open")
        return self._page

    async def _on_response(self, response: Response) -> None:
        if VCODE_PATH not in response.url or response.status != 200:
            return
        try:
            payload = await response.json()
        except (PlaywrightError, ValueError) as exc:
            log_event(logger=self.logger, phase="login", status="warn", message="unreadable CAPTCHA response", error=str(exc))
            return
        image = payload.get("data") if isinstance(payload, dict) else None
        if isinstance(image, str) and image:
            async with self._image_ready:
                self._image = image
                self._image_seq += 1
                self._image_ready.notify_all()

    async def open_login_page(self) -> None:
        self._context = await self._browser.new_context(viewport={"width": 1280, "height": 900}, locale="pt-BR")
        self._page = await self._context.new_page()
        self._page.on("response", self._on_response)
        await self._page.goto(self._login_url, wait_until="networkidle", timeout=NAV_TIMEOUT_MS)

    async def fill_identity(self, email: str, password: str) -> None:
        email_input, password_input = await self._locator.identity_inputs(self.page)
        await email_input.fill(email)
        await password_input.fill(password)

    async def focus_captcha(self) -> None:
        self._captcha_input = await self._locator.captcha_input(self.page)
        await self._captcha_input.click()

    async def wait_for_image(self, timeout: float, *, fresh: bool) -> Optional[str]:
        """Current CAPTCHA image, or with ``fresh`` one pushed after the last submitted answer."""

        floor = self._answered_seq if fresh else 0
        async with self._image_ready:
            try:
                await asyncio.wait_for(self._image_ready.wait_for(lambda: self._image_seq > floor), timeout)
            except asyncio.TimeoutError:
                return None
            return self._image

    async def _settle(self, timeout_ms: int) -> None:
        try:
            await self.page.wait_for_load_state("networkidle", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            log_event(logger=self.logger, phase="login", status="warn", message="page did not settle after submit")

    async def submit_captcha(self, answer: str) -> None:
        if self._captcha_input is None:
            self._captcha_input = await self._locator.captcha_input(self.page)
        await self._captcha_input.fill("")
        await self._captcha_input.type(answer, delay=50)
        self._answered_seq = self._image_seq
        button = await self._locator.login_button(self.page)
        await button.click()
        await self._settle(SUBMIT_NAV_TIMEOUT_MS)
        await asyncio.sleep(POST_SUBMIT_SETTLE_SECONDS)

    async def captcha_rejected(self) -> bool:
        return await self.page.query_selector(PageLocator.CAPTCHA_ERROR_SELECTOR) is not None

    async def verification_requested(self, timeout: float) -> bool:
        try:
            await self.page.wait_for_selector(
                PageLocator.SEND_CODE_SELECTOR, state="visible", timeout=int(timeout * 1000)
            )
        except PlaywrightTimeoutError:
            return False
        return True

    async def request_verification_code(self) -> None:
        await self.page.click(PageLocator.SEND_CODE_SELECTOR)

    async def submit_verification_code(self, code: str) -> None:
        code_input = await self.page.wait_for_selector(PageLocator.CODE_INPUT_SELECTOR, state="visible")
        if code_input is None:
            raise PageShapeChanged("Verification code input not found")
        await code_input.click()
        await code_input.type(code, delay=100)
        button = await self._locator.login_button(self.page)
        await button.click()
        await self._settle(SUBMIT_NAV_TIMEOUT_MS)

    async def cookies(self) -> List[Dict[str, Any]]:
        if self._context is None:
            return []
        return [dict(cookie) for cookie in await self._context.cookies()]

    async def close(self) -> None:
        if self._context is not None:
            await self._context.close()
            self._context = None
            self._page = None


@asynccontextmanager
async def playwright_login_driver(*, login_url: str, logger: JsonLogger) -> AsyncIterator[PlaywrightLoginDriver]:
    async with async_playwright() as playwright:
        browser = await launch_browser(playwright=playwright, logger=logger)
        driver = PlaywrightLoginDriver(browser=browser, login_url=login_url, logger=logger)
        try:
            yield driver
        finally:
            await driver.close()
            await browser.close()


class SessionManager:
    """Provides a valid aggregator session, logging in through the browser when needed."""

    def __init__(
        self,
        *,
        credentials: LoginCredentials,
        store: SessionStore,
        probe: Callable[[str], Awaitable[bool]],
        driver_factory: Callable[[], AsyncContextManager[LoginDriver]],
        solver: CaptchaSolving,
        mailbox: CodeMailbox | None,
        logger: JsonLogger,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_captcha_attempts: int = MAX_CAPTCHA_ATTEMPTS,
        mailbox_timeout: float = 120.0,
    ) -> None:
        self._credentials = credentials
        self._store = store
        self._probe = probe
        self._driver_factory = driver_factory
        self._solver = solver
        self._mailbox = mailbox
        self.logger = logger.bind(component="session")
        self._clock = clock
        self._sleep = sleep
        self._max_captcha_attempts = max(1, max_captcha_attempts)
        self._mailbox_timeout = mailbox_timeout
        self.state = SessionState.IDLE
        self.transitions: List[SessionState] = []

    def _transition(self, state: SessionState, **fields: Any) -> None:
        self.state = state
        self.transitions.append(state)
        log_event(logger=self.logger, phase="login", message=f"state -> {state.value}", state=state.value, **fields)

    async def ensure_session(self) -> SessionCredential:
        saved = await self._store.load_session()
        if saved is not None:
            now = self._clock()
            if not saved.is_fresh(now):
                log_event(
                    logger=self.logger,
                    phase="session",
                    message="saved session expired",
                    age_hours=round(saved.age(now).total_seconds() / 3600, 2),
                )
                await self._store.clear_session()
            elif await self._probe(saved.cookies):
                log_event(logger=self.logger, phase="session", message="reusing saved session")
                return saved
            else:
                log_event(logger=self.logger, phase="session", status="warn", message="saved session rejected by probe")
                await self._store.clear_session()

        credential = await self.full_login()
        await self._store.save_session(credential)
        return credential

    async def invalidate(self) -> None:
        await self._store.clear_session()
        log_event(logger=self.logger, phase="session", message="session credential cleared")

    async def full_login(self) -> SessionCredential:
        self.transitions = []
        try:
            async with self._driver_factory() as driver:
                cookies = await self._drive_login(driver)
        except Exception as exc:
            self._transition(SessionState.FAILED, error=str(exc))
            raise

        credential = SessionCredential.from_cookies(cookies, saved_at=self._clock())
        if not credential.cookies:
            self._transition(SessionState.FAILED, error="no cookies")
            raise LoginFailed("Login finished without session cookies")
        self._transition(SessionState.AUTHENTICATED, has_session_id=credential.session_id is not None)
        return credential

    async def _drive_login(self, driver: LoginDriver) -> List[Dict[str, Any]]:
        self._transition(SessionState.FILL_CREDENTIALS)
        await driver.open_login_page()
        await driver.fill_identity(self._credentials.email, self._credentials.password)

        self._transition(SessionState.AWAIT_CAPTCHA)
        await driver.focus_captcha()
        image = await driver.wait_for_image(CAPTCHA_LOAD_TIMEOUT_SECONDS, fresh=False)
        if not image:
            raise CaptchaLoadTimeout("Captcha not loaded")

        for attempt in range(1, self._max_captcha_attempts + 1):
            self._transition(SessionState.SOLVE_AND_SUBMIT, attempt=attempt)
            answer = await self._solver.solve(image)
            await driver.submit_captcha(answer)
            if not await driver.captcha_rejected():
                break
            self._transition(SessionState.CAPTCHA_REJECTED, attempt=attempt)
            if attempt == self._max_captcha_attempts:
                raise LoginFailed("All CAPTCHA attempts failed")
            refreshed = await driver.wait_for_image(CAPTCHA_REFRESH_TIMEOUT_SECONDS, fresh=True)
            if refreshed:
                image = refreshed

        self._transition(SessionState.CHECK_VERIFICATION)
        if await driver.verification_requested(VERIFICATION_PROMPT_TIMEOUT_SECONDS):
            if self._mailbox is None:
                raise LoginFailed("Login requires e-mail verification but no mailbox is configured")
            sent_at = self._clock()
            await driver.request_verification_code()
            self._transition(SessionState.SUBMIT_CODE)
            code = await self._mailbox.fetch_code(sent_after=sent_at, timeout=self._mailbox_timeout)
            await driver.submit_verification_code(code)
        else:
            self._transition(SessionState.SKIP_VERIFICATION)

        await self._sleep(POST_LOGIN_SETTLE_SECONDS)
        return await driver.cookies()
