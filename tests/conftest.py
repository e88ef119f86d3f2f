"""In-memory stand-ins for the Playwright objects the workflow drives."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

import supabase_agent
from session_store import SessionStateStore
from supabase_agent import (
    BILLING_LINK,
    DASHBOARD_URL,
    GITHUB_BUTTON,
    GITHUB_SUBMIT,
    INVOICE_DOWNLOAD_BUTTON,
    ORG_LINK,
    WorkflowOptions,
)

SIGN_IN_URL = "https://supabase.com/dashboard/sign-in?returnTo=%2Forganizations"
GITHUB_LOGIN_URL = "https://github.com/login?client_id=abc123&return_to=%2Flogin%2Foauth%2Fauthorize"
PASSKEY_URL = "https://github.com/sessions/two-factor/webauthn"
ORG_URL = "https://supabase.com/dashboard/org/acme"
BILLING_URL = "https://supabase.com/dashboard/org/acme/billing"

FAKE_STORAGE_STATE = {
    "cookies": [{"name": "sb-access-token", "value": "token", "domain": "supabase.com", "path": "/"}],
    "origins": [],
}


@dataclass
class FakeDashboard:
    """Scenario knobs plus a record of what the workflow did."""

    signed_in: bool = False
    provider_redirect: str = PASSKEY_URL
    auth_completes: bool = True
    org_names: List[str] = field(default_factory=lambda: ["Acme's Org"])
    has_billing_link: bool = True
    has_download_button: bool = True
    download_arrives: bool = True
    save_fails: bool = False
    github_button_clickable: bool = True
    close_fails: bool = False
    pdf_bytes: bytes = b"%PDF-1.4 fake invoice"

    fills: Dict[str, str] = field(default_factory=dict)
    clicks: List[str] = field(default_factory=list)
    launches: List[Dict[str, Any]] = field(default_factory=list)
    contexts: List[Dict[str, Any]] = field(default_factory=list)
    extra_headers: Dict[str, str] = field(default_factory=dict)
    browsers_open: int = 0
    browsers_closed: int = 0


def _timeout(ms) -> PlaywrightTimeoutError:
    return PlaywrightTimeoutError(f"Timeout {ms}ms exceeded.")


class FakeLocator:
    def __init__(self, page: "FakePage", kind: str, has_text: Optional[str] = None):
        self.page = page
        self.kind = kind
        self.has_text = has_text

    @property
    def first(self) -> "FakeLocator":
        return self

    def filter(self, has_text=None) -> "FakeLocator":
        return FakeLocator(self.page, self.kind, has_text)

    def _orgs(self) -> List[str]:
        names = self.page.dashboard.org_names
        if self.has_text:
            names = [n for n in names if self.has_text in n]
        return names

    async def count(self) -> int:
        d = self.page.dashboard
        if self.kind == "github_button":
            return 1 if "/sign-in" in self.page.url else 0
        if self.kind == "org_link":
            return len(self._orgs()) if self.page.url == DASHBOARD_URL else 0
        if self.kind == "billing_link":
            return 1 if d.has_billing_link else 0
        if self.kind == "download_button":
            return 1 if d.has_download_button and self.page.url == BILLING_URL else 0
        return 0

    async def wait_for(self, state="visible", timeout=None):
        if await self.count() == 0:
            raise _timeout(timeout)

    async def text_content(self, timeout=None):
        return self._orgs()[0]

    async def click(self, timeout=None):
        if await self.count() == 0:
            raise _timeout(timeout)
        d = self.page.dashboard
        if self.kind == "github_button" and not d.github_button_clickable:
            raise _timeout(timeout)
        d.clicks.append(self.kind)
        if self.kind == "github_button":
            self.page.url = d.provider_redirect
            if self.page.url == DASHBOARD_URL:
                d.signed_in = True
        elif self.kind == "org_link":
            self.page.url = ORG_URL
        elif self.kind == "billing_link":
            self.page.url = BILLING_URL
        elif self.kind == "download_button":
            self.page.download_clicked = True


class FakeDownload:
    suggested_filename = "invoice-INV-0042.pdf"

    def __init__(self, dashboard: FakeDashboard):
        self.dashboard = dashboard

    async def save_as(self, path):
        if self.dashboard.save_fails:
            raise OSError(28, "No space left on device")
        Path(path).write_bytes(self.dashboard.pdf_bytes)


class FakeDownloadExpectation:
    def __init__(self, page: "FakePage", timeout):
        self.page = page
        self.timeout = timeout

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            return False
        if not (self.page.download_clicked and self.page.dashboard.download_arrives):
            raise PlaywrightTimeoutError(f'Timeout {self.timeout}ms exceeded while waiting for event "download"')
        return False

    @property
    def value(self):
        async def _value():
            return FakeDownload(self.page.dashboard)

        return _value()


class FakePage:
    def __init__(self, dashboard: FakeDashboard):
        self.dashboard = dashboard
        self.url = "about:blank"
        self.download_clicked = False

    async def goto(self, url, wait_until=None, timeout=None):
        self.url = DASHBOARD_URL if self.dashboard.signed_in else SIGN_IN_URL

    async def wait_for_timeout(self, ms):
        return None

    def locator(self, selector: str) -> FakeLocator:
        kinds = {
            GITHUB_BUTTON: "github_button",
            ORG_LINK: "org_link",
            INVOICE_DOWNLOAD_BUTTON: "download_css",
        }
        return FakeLocator(self, kinds.get(selector, "other"))

    def get_by_role(self, role: str, name=None) -> FakeLocator:
        if role == "link" and name == BILLING_LINK:
            return FakeLocator(self, "billing_link")
        if role == "button":
            return FakeLocator(self, "download_button")
        return FakeLocator(self, "other")

    async def fill(self, selector, value, timeout=None):
        self.dashboard.fills[selector] = value

    async def click(self, selector, timeout=None):
        self.dashboard.clicks.append(selector)

    async def wait_for_url(self, matcher, timeout=None):
        if not self.dashboard.auth_completes:
            raise _timeout(timeout)
        self.url = DASHBOARD_URL
        self.dashboard.signed_in = True
        assert matcher(self.url)

    def expect_download(self, timeout=None) -> FakeDownloadExpectation:
        return FakeDownloadExpectation(self, timeout)


class FakeContext:
    def __init__(self, dashboard: FakeDashboard):
        self.dashboard = dashboard

    async def set_extra_http_headers(self, headers):
        self.dashboard.extra_headers.update(headers)

    async def new_page(self) -> FakePage:
        return FakePage(self.dashboard)

    async def storage_state(self):
        return dict(FAKE_STORAGE_STATE)


class FakeBrowser:
    def __init__(self, dashboard: FakeDashboard):
        self.dashboard = dashboard

    async def new_context(self, **kwargs) -> FakeContext:
        self.dashboard.contexts.append(kwargs)
        # A valid seeded snapshot means the dashboard already knows us
        if kwargs.get("storage_state"):
            self.dashboard.signed_in = self.dashboard.signed_in or kwargs["storage_state"] == FAKE_STORAGE_STATE
        return FakeContext(self.dashboard)

    async def close(self):
        self.dashboard.browsers_closed += 1
        if self.dashboard.close_fails:
            raise PlaywrightError("Target page, context or browser has been closed")


class FakeChromium:
    def __init__(self, dashboard: FakeDashboard):
        self.dashboard = dashboard

    async def launch(self, **kwargs) -> FakeBrowser:
        self.dashboard.launches.append(kwargs)
        self.dashboard.browsers_open += 1
        return FakeBrowser(self.dashboard)


class FakePlaywrightManager:
    def __init__(self, dashboard: FakeDashboard):
        self.chromium = FakeChromium(dashboard)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


@pytest.fixture
def dashboard(monkeypatch):
    """Patch Playwright in the workflow module with an in-memory dashboard."""
    board = FakeDashboard()
    monkeypatch.setattr(supabase_agent, "async_playwright", lambda: FakePlaywrightManager(board))
    return board


@pytest.fixture
def options(tmp_path):
    return WorkflowOptions(root=tmp_path)


@pytest.fixture
def store(options):
    return SessionStateStore(options.auth_state_path)
