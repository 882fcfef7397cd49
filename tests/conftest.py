import itertools

import pytest
from selenium.common.exceptions import NoSuchElementException
from selenium.webdriver.common.by import By

from marketplace.ai_verifier import VerificationResult
from marketplace.config import Config
from marketplace.gumroad_browser import FILL_EDITOR_JS, GumroadBrowserClient, PublishResult
from marketplace.store import MarketplaceStore
from marketplace.utils import RetryPolicy

GUMROAD_BASE = "https://gumroad.test"
PRODUCT_HOST = "example-host.com"
PRODUCT_URL = "https://creator123.example-host.com/l/abc123"


# -----------------------------
# Fake Selenium driver
# -----------------------------

_element_ids = itertools.count(1)


class FakeElement:
    def __init__(self, tag, selectors=(), text="", value="", href=None, height=30, displayed=True, on_click=None):
        self.id = f"el-{next(_element_ids)}"
        self.tag = tag
        self.selectors = set(selectors)
        self.text = text
        self.value = value
        self.href = href
        self.size = {"height": height, "width": 400}
        self.displayed = displayed
        self.on_click = on_click
        self.clicks = 0

    def matches(self, selector):
        return selector == self.tag or selector in self.selectors

    def is_displayed(self):
        return self.displayed

    def click(self):
        self.clicks += 1
        if self.on_click:
            self.on_click()

    def clear(self):
        self.value = ""

    def send_keys(self, text):
        self.value += text

    def get_attribute(self, name):
        return {"value": self.value, "href": self.href}.get(name)


class FakeDriver:
    """Page model keyed by URL. Clicking elements moves current_url."""

    def __init__(self, pages=None, redirects=None):
        self.pages = pages or {}
        self.redirects = redirects or {}
        self.current_url = "about:blank"
        self.visited = []
        self.scripts = []
        self.screenshots = []
        self.quit_called = False

    def get(self, url):
        self.visited.append(url)
        self.current_url = self.redirects.get(url, url)

    def navigate(self, url):
        self.current_url = url

    @property
    def elements(self):
        return self.pages.get(self.current_url, [])

    def find_elements(self, by, selector):
        if by == By.TAG_NAME:
            return [e for e in self.elements if e.tag == selector]
        parts = [p.strip() for p in selector.split(",")]
        return [e for e in self.elements if any(e.matches(p) for p in parts)]

    def find_element(self, by, selector):
        found = self.find_elements(by, selector)
        if not found:
            raise NoSuchElementException(selector)
        return found[0]

    def execute_script(self, script, *args):
        self.scripts.append(script)
        if script == FILL_EDITOR_JS:
            args[0].value = args[1]
        return True

    def save_screenshot(self, path):
        self.screenshots.append(path)
        return True

    def quit(self):
        self.quit_called = True


class GumroadSite:
    """Scripted Gumroad product wizard on top of FakeDriver."""

    new_url = f"{GUMROAD_BASE}/products/new"
    login_url = f"{GUMROAD_BASE}/login?next=%2Fproducts%2Fnew"
    dashboard_url = f"{GUMROAD_BASE}/dashboard"
    edit_url = f"{GUMROAD_BASE}/products/abc123/edit"
    content_url = f"{GUMROAD_BASE}/products/abc123/edit/content"
    share_url = f"{GUMROAD_BASE}/products/abc123/edit/share"

    def __init__(self, logged_in=True, product_url=PRODUCT_URL):
        self.driver = FakeDriver()
        d = self.driver
        if not logged_in:
            d.redirects[self.new_url] = self.login_url

        self.email = FakeElement("input", ["input[type='email']"])
        self.password = FakeElement("input", ["input[type='password']"])
        self.login_button = FakeElement("button", ["button[type='submit']"], text="Login", on_click=self._log_in)

        self.name = FakeElement("input", ["input[name='name']"])
        self.price = FakeElement("input", ["input[name='price']"])
        self.digital = FakeElement("button", text="Digital product")
        self.next_button = FakeElement("button", text="Next: Customize", on_click=lambda: d.navigate(self.edit_url))

        self.small_editor = FakeElement("div", ["[contenteditable='true']"], height=40)
        self.editor = FakeElement("div", [".ProseMirror", "[contenteditable='true']"], height=320)
        self.save_button = FakeElement("button", text="Save and continue", on_click=lambda: d.navigate(self.content_url))
        self.publish_button = FakeElement(
            "button", text="Publish and continue", on_click=lambda: d.navigate(self.share_url)
        )

        self.share_input = FakeElement("input", value=product_url or "")
        self.body = FakeElement("body", text="Your product is live!")

        d.pages = {
            self.login_url: [self.email, self.password, self.login_button],
            self.new_url: [self.name, self.price, self.digital, self.next_button],
            self.edit_url: [self.small_editor, self.editor, self.save_button],
            self.content_url: [self.publish_button],
            self.share_url: [self.share_input, self.body],
        }

    def _log_in(self):
        self.driver.redirects.pop(self.new_url, None)
        self.driver.navigate(self.dashboard_url)

    def remove(self, url, element):
        self.driver.pages[url] = [e for e in self.driver.pages[url] if e is not element]


class FakeBrowserClient:
    """Stands in for GumroadBrowserClient in orchestrator and server tests."""

    def __init__(self, result=None):
        self.result = result or PublishResult(success=True, message="created", product_url=PRODUCT_URL)
        self.calls = []

    def create_product(self, product, credentials):
        self.calls.append((product, credentials))
        return self.result


class FakeVerifier:
    def __init__(self, approved=True, reason="Looks complete"):
        self.result = VerificationResult(approved=approved, reason=reason, type="Elementor")
        self.calls = []

    def verify(self, title, description, project_type, google_drive_link=None, deadline=None):
        self.calls.append(title)
        return self.result


# -----------------------------
# Fixtures
# -----------------------------


@pytest.fixture
def config(tmp_path):
    return Config(
        database_url=f"sqlite:///{tmp_path / 'marketplace.db'}",
        gumroad_base_url=GUMROAD_BASE,
        gumroad_product_host=PRODUCT_HOST,
        gumroad_profile_dir=str(tmp_path / "profile"),
        gumroad_step_timeout=0,
        storage_retry_delay=0,
    )


@pytest.fixture
def store(config):
    return MarketplaceStore(config.database_url)


@pytest.fixture
def policy():
    return RetryPolicy(max_attempts=3, delay_seconds=0)


@pytest.fixture
def make_project(store):
    def _make(status="approved", price=20.0, user_id="user-1", gumroad_link=None, **fields):
        data = {
            "title": "Elementor SaaS landing kit",
            "description": "Twelve responsive Elementor sections with a dark and light theme.",
            "project_type": "Elementor",
            "price": price,
            "google_drive_link": "https://drive.google.com/file/d/abc/view",
            "status": status,
        }
        data.update(fields)
        project = store.create_project(user_id, data)
        if gumroad_link:
            store.update_project(project["id"], gumroad_link=gumroad_link)
            project = store.get_project(project["id"])
        return project

    return _make


@pytest.fixture
def site():
    return GumroadSite()


@pytest.fixture
def make_client(config, tmp_path):
    def _make(driver):
        return GumroadBrowserClient(
            config,
            driver_factory=lambda cfg: driver,
            screenshot_dir=str(tmp_path / "screenshots"),
            settle_seconds=0,
        )

    return _make
