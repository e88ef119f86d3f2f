import argparse
import asyncio
import json
import logging
import os
import re
import sys
from dataclasses import asdict, dataclass, field, replace
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Download,
    Error as PlaywrightError,
    Locator,
    Page,
    TimeoutError as PlaywrightTimeoutError,
)

from session_store import SessionStateError, SessionStateStore

# ---------------------------
# Configuration & Logging
# ---------------------------
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
logger = logging.getLogger("supabase_invoice")

# Global timeouts (ms)
NAV_TIMEOUT = 60_000
AUTH_TIMEOUT = 300_000
ORG_TIMEOUT = 30_000
DOWNLOAD_TIMEOUT = 60_000
SHORT_TIMEOUT = 10_000
SETTLE_MS = 3_000

DASHBOARD_URL = "https://supabase.com/dashboard/organizations"
DEFAULT_ACCEPT_LANGUAGE = "ja-JP,ja;q=0.9,en-US;q=0.8,en;q=0.7"

GITHUB_BUTTON = 'button:has-text("Continue with GitHub")'
GITHUB_LOGIN_INPUT = 'input[name="login"]'
GITHUB_PASSWORD_INPUT = 'input[name="password"]'
GITHUB_SUBMIT = 'input[type="submit"][name="commit"]'
ORG_LINK = 'a[href^="/dashboard/org/"]'
BILLING_LINK = "Billing"
# Icon-only download button in the billing view's invoice table
INVOICE_DOWNLOAD_BUTTON = (
    ".relative.justify-center.cursor-pointer.inline-flex.items-center.space-x-2.text-center"
    ".font-regular.ease-out.duration-200.rounded-md.outline-none.transition-all.outline-0"
    ".focus-visible\\:outline-4.focus-visible\\:outline-offset-1.border.text-foreground.bg-transparent"
)


def env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


def configure_logging(log_dir: Path) -> Path:
    """Console logging plus the append-only service log under ``log_dir``."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "service.log"
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    # Safe to call twice (CLI main and server startup): one file handler per path
    target = os.path.abspath(log_file)
    if not any(isinstance(h, logging.FileHandler) and h.baseFilename == target for h in root.handlers):
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)
    return log_file


@dataclass
class WorkflowOptions:
    root: Path = field(default_factory=Path)
    force_headless: bool = False
    org_name: Optional[str] = None
    github_username: Optional[str] = None
    github_password: Optional[str] = None
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE
    executable_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "WorkflowOptions":
        return cls(
            root=Path(os.getenv("DENCHO_ROOT", ".")),
            force_headless=env_flag("SUPABASE_HEADLESS"),
            org_name=os.getenv("SUPABASE_ORG_NAME") or None,
            github_username=os.getenv("GITHUB_USERNAME") or None,
            github_password=os.getenv("GITHUB_PASSWORD") or None,
            accept_language=os.getenv("SUPABASE_ACCEPT_LANGUAGE", DEFAULT_ACCEPT_LANGUAGE),
            executable_path=os.getenv("BROWSER_EXECUTABLE_PATH") or None,
        )

    @property
    def auth_state_path(self) -> Path:
        return self.root / ".auth" / "supabase-state.json"

    @property
    def download_dir(self) -> Path:
        return self.root / "downloads" / "invoice"

    @property
    def log_dir(self) -> Path:
        return self.root / "logs"

    @property
    def has_credentials(self) -> bool:
        return bool(self.github_username and self.github_password)

    def with_credentials(self, username: Optional[str], password: Optional[str]) -> "WorkflowOptions":
        """Per-request credentials win over the environment; blanks are ignored."""
        return replace(
            self,
            github_username=username or self.github_username,
            github_password=password or self.github_password,
        )


# ---------------------------
# Outcome & error taxonomy
# ---------------------------
class ErrorKind(str, Enum):
    BUSY = "Busy"
    AUTHENTICATION_TIMEOUT = "AuthenticationTimeout"
    NAVIGATION_ERROR = "NavigationError"
    DOWNLOAD_ERROR = "DownloadError"
    SAVE_ERROR = "SaveError"
    UNKNOWN_FAILURE = "UnknownFailure"


class WorkflowError(Exception):
    kind = ErrorKind.UNKNOWN_FAILURE


class AuthenticationTimeout(WorkflowError):
    kind = ErrorKind.AUTHENTICATION_TIMEOUT


class NavigationError(WorkflowError):
    kind = ErrorKind.NAVIGATION_ERROR


class DownloadError(WorkflowError):
    kind = ErrorKind.DOWNLOAD_ERROR


class SaveError(WorkflowError):
    kind = ErrorKind.SAVE_ERROR


class WorkflowState(str, Enum):
    INIT = "Init"
    NAVIGATE = "Navigate"
    AUTHENTICATE = "Authenticate"
    PERSIST_SESSION = "PersistSession"
    SELECT_ORGANIZATION = "SelectOrganization"
    NAVIGATE_BILLING = "NavigateBilling"
    DOWNLOAD = "Download"
    SAVE = "Save"
    DONE = "Done"
    FAILED = "Failed"


class AuthState(str, Enum):
    ALREADY_AUTHENTICATED = "AlreadyAuthenticated"
    SIGN_IN_REQUIRED = "SignInRequired"
    PROVIDER_SESSION_REUSE = "ProviderSessionReuse"
    CREDENTIAL_ENTRY_REQUIRED = "CredentialEntryRequired"
    SECONDARY_AUTH_REQUIRED = "SecondaryAuthRequired"


@dataclass
class WorkflowResult:
    status: Literal["success", "error"]
    message: str
    pdf_path: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    states: List[str] = field(default_factory=list)
    urls: List[str] = field(default_factory=list)
    headless: Optional[bool] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @property
    def busy(self) -> bool:
        return self.error_kind is ErrorKind.BUSY

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)


def busy_result() -> WorkflowResult:
    return WorkflowResult(
        status="error",
        message="An invoice download is already in progress",
        error_kind=ErrorKind.BUSY,
    )


# ---------------------------
# URL classification
# ---------------------------
def is_sign_in_url(url: str) -> bool:
    return "/sign-in" in urlparse(url or "").path


def is_organizations_url(url: str) -> bool:
    parsed = urlparse(url or "")
    return parsed.netloc.endswith("supabase.com") and parsed.path.rstrip("/").endswith("/dashboard/organizations")


def is_github_login_url(url: str) -> bool:
    parsed = urlparse(url or "")
    return parsed.netloc.endswith("github.com") and parsed.path.rstrip("/") in ("/login", "/session")


def classify_landing(url: str) -> AuthState:
    if is_sign_in_url(url):
        return AuthState.SIGN_IN_REQUIRED
    return AuthState.ALREADY_AUTHENTICATED


def classify_provider_redirect(url: str) -> AuthState:
    # Anything unrecognized falls through to the most permissive wait
    if is_organizations_url(url):
        return AuthState.PROVIDER_SESSION_REUSE
    if is_github_login_url(url):
        return AuthState.CREDENTIAL_ENTRY_REQUIRED
    return AuthState.SECONDARY_AUTH_REQUIRED


def resolve_headless(has_snapshot: bool, force_headless: bool) -> bool:
    return force_headless or has_snapshot


def invoice_filename(day: date) -> str:
    return f"supabase-invoice-{day:%Y-%m-%d}.pdf"


def invoice_path(download_dir: Path, day: date) -> Path:
    return download_dir / invoice_filename(day)


# ---------------------------
# Page Interaction Helpers
# ---------------------------
def enter_state(result: WorkflowResult, state: WorkflowState) -> None:
    result.states.append(state.value)
    logger.info(f"[state] -> {state.value}")


def observe_url(result: WorkflowResult, page: Page, label: str) -> str:
    url = page.url
    result.urls.append(url)
    logger.info(f"[{label}] current URL: {url}")
    return url


async def settle(page: Page) -> None:
    await page.wait_for_timeout(SETTLE_MS)


async def first_present(candidates: List[Locator]) -> Optional[Locator]:
    for loc in candidates:
        try:
            if await loc.count() > 0:
                return loc.first
        except PlaywrightError as e:
            logger.debug(f"first_present: {e}")
    return None


def load_snapshot(store: SessionStateStore) -> Optional[Dict[str, Any]]:
    if not store.exists():
        logger.info("No saved session; first run needs an interactive login")
        return None
    try:
        return store.load()
    except SessionStateError as e:
        logger.warning(f"Ignoring unusable session snapshot: {e}")
        return None


async def launch_browser(pw, options: WorkflowOptions, headless: bool) -> Browser:
    launch_kwargs: Dict[str, Any] = {"headless": headless}
    if options.executable_path:
        logger.info(f"Using browser at: {options.executable_path}")
        launch_kwargs["executable_path"] = options.executable_path
    else:
        logger.info("Using default Playwright Chromium")
    return await pw.chromium.launch(**launch_kwargs)


async def close_browser(browser: Browser) -> None:
    # A failing close must not mask the error that ended the run
    try:
        await browser.close()
    except PlaywrightError as e:
        logger.warning(f"Browser close failed: {e}")
        return
    logger.info("Browser closed")


# ---------------------------
# Workflow steps
# ---------------------------
async def open_organizations(page: Page, result: WorkflowResult) -> AuthState:
    enter_state(result, WorkflowState.NAVIGATE)
    logger.info(f"Navigating to {DASHBOARD_URL}")
    try:
        await page.goto(DASHBOARD_URL, wait_until="domcontentloaded", timeout=NAV_TIMEOUT)
    except PlaywrightTimeoutError as e:
        raise NavigationError("The Supabase dashboard did not load in time") from e
    await settle(page)
    landing = classify_landing(observe_url(result, page, "navigate"))
    logger.info(f"Landing page classified as {landing.value}")
    return landing


async def submit_github_credentials(page: Page, options: WorkflowOptions) -> None:
    logger.info(f"Filling GitHub credentials for {options.github_username}")
    try:
        await page.fill(GITHUB_LOGIN_INPUT, options.github_username, timeout=SHORT_TIMEOUT)
        await page.fill(GITHUB_PASSWORD_INPUT, options.github_password, timeout=SHORT_TIMEOUT)
        await page.click(GITHUB_SUBMIT, timeout=SHORT_TIMEOUT)
    except PlaywrightTimeoutError as e:
        raise NavigationError("The GitHub login form could not be filled") from e


async def wait_for_organizations(page: Page, result: WorkflowResult) -> None:
    seconds = AUTH_TIMEOUT // 1000
    logger.info(f"Waiting up to {seconds}s for authentication to finish...")
    try:
        await page.wait_for_url(is_organizations_url, timeout=AUTH_TIMEOUT)
    except PlaywrightTimeoutError as e:
        logger.error(f"[timeout] Authentication not completed within {seconds}s")
        raise AuthenticationTimeout(f"Authentication was not completed within {seconds} seconds") from e
    observe_url(result, page, "authenticated")


async def authenticate(page: Page, result: WorkflowResult, options: WorkflowOptions) -> AuthState:
    """
    Sign in through the GitHub OAuth hand-off.

    The redirect target after clicking the GitHub button is classified once:
    straight back to the dashboard (GitHub session reused), GitHub's
    credential form, or some secondary step (2FA, passkey, authorize) that
    only a human can finish. The two latter cases block until the dashboard
    comes back or AUTH_TIMEOUT expires.
    """
    enter_state(result, WorkflowState.AUTHENTICATE)
    button = page.locator(GITHUB_BUTTON).first
    try:
        await button.wait_for(state="visible", timeout=SHORT_TIMEOUT)
    except PlaywrightTimeoutError as e:
        raise NavigationError("'Continue with GitHub' button not found on the sign-in page") from e
    logger.info("Clicking 'Continue with GitHub'")
    try:
        await button.click(timeout=SHORT_TIMEOUT)
    except PlaywrightTimeoutError as e:
        raise NavigationError("'Continue with GitHub' button could not be clicked") from e
    await settle(page)

    auth = classify_provider_redirect(observe_url(result, page, "provider"))
    logger.info(f"Provider redirect classified as {auth.value}")

    if auth is AuthState.PROVIDER_SESSION_REUSE:
        logger.info("Authenticated through the existing GitHub session")
        return auth

    if auth is AuthState.CREDENTIAL_ENTRY_REQUIRED:
        if options.has_credentials:
            await submit_github_credentials(page, options)
        else:
            logger.info("GitHub login page reached: enter username/password in the browser window")
        logger.info("Then complete any passkey / two-factor prompt")
    else:
        logger.info("Complete the GitHub passkey / two-factor step in the browser window")

    await wait_for_organizations(page, result)
    return auth


async def persist_session(context: BrowserContext, store: SessionStateStore, result: WorkflowResult) -> None:
    enter_state(result, WorkflowState.PERSIST_SESSION)
    try:
        snapshot = await context.storage_state()
        store.save(snapshot)
    except (OSError, PlaywrightError) as e:
        logger.warning(f"Could not persist session snapshot (non-fatal): {e}")


async def select_organization(page: Page, result: WorkflowResult, options: WorkflowOptions) -> None:
    enter_state(result, WorkflowState.SELECT_ORGANIZATION)
    links = page.locator(ORG_LINK)
    if options.org_name:
        links = links.filter(has_text=options.org_name)
    link = links.first
    try:
        await link.wait_for(state="visible", timeout=ORG_TIMEOUT)
    except PlaywrightTimeoutError as e:
        raise NavigationError("No organization appeared on the organization listing") from e
    name = (await link.text_content() or "").strip()
    logger.info(f"Selecting organization: {name}")
    await link.click()
    await settle(page)
    observe_url(result, page, "organization")


async def open_billing(page: Page, result: WorkflowResult) -> None:
    enter_state(result, WorkflowState.NAVIGATE_BILLING)
    try:
        await page.get_by_role("link", name=BILLING_LINK).first.click(timeout=NAV_TIMEOUT)
    except PlaywrightTimeoutError as e:
        raise NavigationError("Billing link not found in the organization view") from e
    await settle(page)
    observe_url(result, page, "billing")


async def download_invoice(page: Page, result: WorkflowResult) -> Download:
    enter_state(result, WorkflowState.DOWNLOAD)
    trigger = await first_present([
        page.get_by_role("button", name=re.compile(r"download", re.I)),
        page.locator(INVOICE_DOWNLOAD_BUTTON),
    ])
    if trigger is None:
        raise NavigationError("Invoice download button not found on the billing page")

    try:
        async with page.expect_download(timeout=DOWNLOAD_TIMEOUT) as dl_info:
            await trigger.click(timeout=SHORT_TIMEOUT)
        download = await dl_info.value
    except PlaywrightTimeoutError as e:
        logger.error(f"[timeout] No download event within {DOWNLOAD_TIMEOUT // 1000}s")
        raise DownloadError(f"No download started within {DOWNLOAD_TIMEOUT // 1000} seconds") from e
    logger.info(f"Download started: {download.suggested_filename}")
    return download


async def save_invoice(download: Download, out_path: Path, result: WorkflowResult) -> str:
    # Same-day reruns overwrite the same file
    enter_state(result, WorkflowState.SAVE)
    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        await download.save_as(str(out_path))
    except (OSError, PlaywrightError) as e:
        logger.error(f"Saving invoice to {out_path} failed: {e}")
        raise SaveError("The invoice file could not be written") from e
    logger.info(f"✅ Invoice saved -> {out_path}")
    return str(out_path)


async def drive_session(
    page: Page,
    context: BrowserContext,
    store: SessionStateStore,
    options: WorkflowOptions,
    result: WorkflowResult,
    day: date,
) -> str:
    landing = await open_organizations(page, result)
    if landing is AuthState.SIGN_IN_REQUIRED:
        await authenticate(page, result, options)
        await persist_session(context, store, result)
    else:
        logger.info("Already signed in; skipping authentication")

    await select_organization(page, result, options)
    await open_billing(page, result)
    download = await download_invoice(page, result)
    return await save_invoice(download, invoice_path(options.download_dir, day), result)


def fail(result: WorkflowResult, kind: ErrorKind, message: str) -> WorkflowResult:
    enter_state(result, WorkflowState.FAILED)
    logger.error(f"❌ [{kind.value}] {message}")
    result.status = "error"
    result.error_kind = kind
    result.message = message
    return result


# ---------------------------
# Main workflow
# ---------------------------
async def run_workflow(
    options: Optional[WorkflowOptions] = None,
    store: Optional[SessionStateStore] = None,
    day: Optional[date] = None,
) -> WorkflowResult:
    options = options or WorkflowOptions.from_env()
    store = store or SessionStateStore(options.auth_state_path)
    day = day or date.today()
    result = WorkflowResult(status="error", message="")

    enter_state(result, WorkflowState.INIT)
    snapshot = load_snapshot(store)
    headless = resolve_headless(snapshot is not None, options.force_headless)
    result.headless = headless
    logger.info(f"Starting invoice download (headless={headless}, saved session={snapshot is not None})")

    try:
        async with async_playwright() as pw:
            browser = await launch_browser(pw, options, headless)
            try:
                context: BrowserContext = await browser.new_context(accept_downloads=True, storage_state=snapshot)
                await context.set_extra_http_headers({"Accept-Language": options.accept_language})
                page: Page = await context.new_page()
                pdf_path = await drive_session(page, context, store, options, result, day)
            finally:
                await close_browser(browser)
    except WorkflowError as e:
        return fail(result, e.kind, str(e))
    except Exception as e:
        logger.exception(f"Unexpected failure during invoice download: {e}")
        return fail(result, ErrorKind.UNKNOWN_FAILURE, "Unexpected error during invoice download")

    enter_state(result, WorkflowState.DONE)
    result.status = "success"
    result.pdf_path = pdf_path
    result.message = f"Supabase invoice downloaded: {Path(pdf_path).name}"
    return result


# ---------------------------
# CLI + Main
# ---------------------------
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Download the latest Supabase invoice through the dashboard")
    p.add_argument("--root", default=os.getenv("DENCHO_ROOT", "."), help="Directory holding .auth/, downloads/ and logs/")
    p.add_argument("--headless", action="store_true", help="Force headless even without a saved session")
    p.add_argument("--org", default=os.getenv("SUPABASE_ORG_NAME"), help="Organization name to open (default: first listed)")
    return p.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    options = replace(
        WorkflowOptions.from_env(),
        root=Path(args.root),
        org_name=args.org or None,
    )
    if args.headless:
        options.force_headless = True
    configure_logging(options.log_dir)

    res = await run_workflow(options)
    print("\n-- Run complete --")
    print("States:", " -> ".join(res.states))
    print("Status:", res.status)
    print("PDF path:", res.pdf_path)
    print("Result JSON:\n", res.to_json())
    return 0 if res.ok else 1


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()
