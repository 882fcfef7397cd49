import os
import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, List, Optional
from urllib.parse import urlparse

from selenium import webdriver
from selenium.common.exceptions import NoSuchElementException, TimeoutException, WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.support.ui import WebDriverWait
from webdriver_manager.chrome import ChromeDriverManager

from .config import Config
from .credentials import GumroadCredentials
from .locators import LocatorSet, load_locators
from .utils import PROJECT_ROOT, AutomationError, get_logger, handle_errors

logger = get_logger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

STEALTH_JS = """
    Object.defineProperty(navigator, 'webdriver', {
        get: () => undefined
    })
"""

SCROLL_TO_BOTTOM_JS = "window.scrollTo(0, document.body.scrollHeight);"

FILL_EDITOR_JS = """
    const editor = arguments[0];
    const text = arguments[1];
    editor.focus();
    if (editor.tagName === 'TEXTAREA') {
        editor.value = text;
    } else {
        editor.innerHTML = '';
        editor.textContent = text;
    }
    editor.dispatchEvent(new Event('input', { bubbles: true }));
    return true;
"""

# 설명 에디터로 간주할 최소 높이(px)
MIN_EDITOR_HEIGHT = 100

MISSING_CREDENTIALS_INSTRUCTIONS = [
    "Save your Gumroad email and password in the dashboard (Gumroad settings)",
    "Or run setup_gumroad_auth.py once to store a logged-in browser session",
    "Then trigger publishing again for this project",
]

MANUAL_INSTRUCTIONS = [
    "Manual creation required",
    "Go to https://gumroad.com/dashboard",
    "Create a new product with the provided details",
    "Upload your files and set it as published",
]

URL_CAPTURE_INSTRUCTIONS = [
    "The product may already be live on Gumroad even though its URL was not captured",
    "Check https://gumroad.com/products before publishing again to avoid a duplicate",
    "Copy the product link from Gumroad and attach it to the project manually",
]

SUCCESS_INSTRUCTIONS = [
    "Product has been automatically created on Gumroad",
    "You can now upload your files to the product",
    "Share the Gumroad link for sales",
]


@dataclass
class PublishResult:
    success: bool
    message: str
    product_url: Optional[str] = None
    error: Optional[str] = None
    stage: Optional[str] = None
    instructions: List[str] = field(default_factory=list)
    already_published: bool = False
    persisted: bool = False

    def to_dict(self):
        return asdict(self)


@dataclass
class GumroadProduct:
    name: str
    description: str
    price: float
    category: str = "digital"

    @classmethod
    def from_project(cls, project: dict) -> "GumroadProduct":
        return cls(
            name=project["title"],
            description=project.get("description") or "",
            price=float(project.get("price") or 0),
            category=project.get("project_type") or "digital",
        )


def build_chrome_driver(config: Config):
    """영구 프로필과 탐지 회피 옵션을 적용한 Chrome 드라이버를 생성합니다."""
    profile_dir = os.path.abspath(config.gumroad_profile_dir)
    os.makedirs(profile_dir, exist_ok=True)

    options = Options()
    # Persistent profile keeps the Gumroad session between runs
    options.add_argument(f"user-data-dir={profile_dir}")

    # Anti-detection measures
    options.add_argument("--disable-blink-features=AutomationControlled")
    options.add_experimental_option("excludeSwitches", ["enable-automation"])
    options.add_experimental_option("useAutomationExtension", False)
    options.add_argument(f"--user-agent={USER_AGENT}")

    if config.gumroad_headless:
        options.add_argument("--headless=new")
    if config.chrome_path:
        options.binary_location = config.chrome_path

    options.add_argument("--window-size=1366,768")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")

    service = Service(ChromeDriverManager().install())
    driver = webdriver.Chrome(service=service, options=options)
    driver.execute_cdp_cmd("Page.addScriptToEvaluateOnNewDocument", {"source": STEALTH_JS})
    driver.set_page_load_timeout(config.gumroad_step_timeout)
    return driver


def is_login_page(url: str) -> bool:
    return "/login" in (url or "") or "/signin" in (url or "")


def _element_height(element) -> float:
    try:
        return float((element.size or {}).get("height", 0))
    except WebDriverException:
        return 0.0


def _type_into(element, text: str):
    element.click()
    element.clear()
    element.send_keys(text)


def _format_price(price: float) -> str:
    return f"{price:g}"


class GumroadBrowserClient:
    """
    Gumroad Browser Automation Client.

    Drives the real Gumroad product wizard with Selenium because Gumroad has
    no public product-creation API. One browser session per call; the session
    is always closed. Steps are never retried here.
    """

    def __init__(
        self,
        config: Config,
        locators: Optional[LocatorSet] = None,
        driver_factory: Optional[Callable[[Config], object]] = None,
        screenshot_dir: Optional[str] = None,
        settle_seconds: float = 2.0,
    ):
        self.config = config
        self.locators = locators or load_locators(config.gumroad_locators_file)
        self.driver_factory = driver_factory or build_chrome_driver
        self.screenshot_dir = screenshot_dir or os.path.join(PROJECT_ROOT, "logs", "screenshots")
        self.settle_seconds = settle_seconds
        self.base_url = config.gumroad_base_url.rstrip("/")
        host = re.escape(config.gumroad_product_host)
        self.url_pattern = re.compile(rf"https?://[a-z0-9-]+\.{host}/l/[A-Za-z0-9_-]+", re.IGNORECASE)

    @property
    def new_product_url(self) -> str:
        return f"{self.base_url}/products/new"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_product(self, product: GumroadProduct, credentials: Optional[GumroadCredentials]) -> PublishResult:
        if credentials is None or not credentials.email or not credentials.password:
            logger.warning(f"Gumroad credentials missing, automation not started for '{product.name}'")
            return PublishResult(
                success=False,
                message="Gumroad credentials are not configured",
                error="missing_gumroad_credentials",
                stage="login",
                instructions=list(MISSING_CREDENTIALS_INSTRUCTIONS),
            )

        driver = None
        try:
            logger.info(f"Starting Gumroad automation for '{product.name}'")
            driver = self._start_driver()
            self._login(driver, credentials)
            self._fill_product_form(driver, product)
            self._go_to_customize(driver)
            self._fill_description(driver, product.description)
            self._save(driver)
            self._publish(driver)
            product_url = self._capture_url(driver)
            logger.info(f"Gumroad product created: {product_url}")
            return PublishResult(
                success=True,
                message="Product successfully created on Gumroad!",
                product_url=product_url,
                instructions=list(SUCCESS_INSTRUCTIONS),
            )
        except AutomationError as e:
            if driver is not None:
                self._save_screenshot(driver, e.stage)
            return self._failure(e)
        finally:
            if driver is not None:
                try:
                    driver.quit()
                except WebDriverException as e:
                    logger.warning(f"Browser did not quit cleanly: {e}")

    def login_setup(self):
        """
        Opens the browser for manual login.
        Waits for the user to close the browser manually.
        """
        driver = self.driver_factory(self.config)
        print("🚀 Opening Browser for Gumroad Login...")
        driver.get(f"{self.base_url}/login")

        print("\n" + "=" * 60)
        print(" ACTION REQUIRED: ")
        print(" 1. Please log in to Gumroad in the opened browser window.")
        print(" 2. Verify you can see your Gumroad dashboard.")
        print(" 3. CLOSE the browser window when done to save the session.")
        print("=" * 60 + "\n")

        try:
            # Loop until window is closed
            while True:
                time.sleep(1)
                _ = driver.current_url
        except WebDriverException:
            print("✅ Browser closed. Session saved! You can now run automation.")
        finally:
            try:
                driver.quit()
            except WebDriverException:
                logger.debug("Browser already closed")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    @handle_errors(stage="login", error_class=AutomationError)
    def _start_driver(self):
        return self.driver_factory(self.config)

    @handle_errors(stage="login", error_class=AutomationError)
    def _login(self, driver, credentials: GumroadCredentials):
        driver.get(self.new_product_url)
        self._settle()
        logger.info(f"Current URL: {driver.current_url}")

        if not is_login_page(driver.current_url):
            logger.info("Already logged in, reusing browser session")
            return

        logger.info("Login required, submitting credentials")
        _type_into(self._wait_for(driver, "login_email", "login"), credentials.email)
        _type_into(self._wait_for(driver, "login_password", "login"), credentials.password)
        self._wait_for(driver, "login_submit", "login").click()

        try:
            self._wait(driver).until(lambda d: not is_login_page(d.current_url))
        except TimeoutException as e:
            raise AutomationError(
                "Login did not complete, still on the login page", stage="login", original_exception=e
            ) from e
        logger.info("Login successful")

        driver.get(self.new_product_url)
        self._settle()

    @handle_errors(stage="product-form", error_class=AutomationError)
    def _fill_product_form(self, driver, product: GumroadProduct):
        _type_into(self._wait_for(driver, "product_name", "product-form"), product.name)

        driver.execute_script(SCROLL_TO_BOTTOM_JS)
        price_input = self.locators.find_first(driver, "product_price")
        if price_input is not None:
            _type_into(price_input, _format_price(product.price))
        else:
            logger.warning("Price field not found, leaving Gumroad default price")

        digital = self.locators.find_first(driver, "digital_product")
        if digital is not None:
            digital.click()
        else:
            logger.warning("'Digital product' option not found, keeping default product type")
        self._settle()
        logger.info("Product details filled")

    @handle_errors(stage="navigation:customize", error_class=AutomationError)
    def _go_to_customize(self, driver):
        self._click_and_wait(driver, "next_customize", "navigation:customize", "Next: Customize")
        logger.info("Navigated to Customize page")

    @handle_errors(stage="description", error_class=AutomationError)
    def _fill_description(self, driver, description: str):
        try:
            editors = self._wait(driver).until(self._tall_editors)
        except TimeoutException as e:
            raise AutomationError("No description editor found", stage="description", original_exception=e) from e
        editor = max(editors, key=_element_height)
        driver.execute_script(FILL_EDITOR_JS, editor, description)
        self._settle()
        logger.info("Description filled")

    @handle_errors(stage="save", error_class=AutomationError)
    def _save(self, driver):
        self._click_and_wait(driver, "save_continue", "save", "Save and continue")
        logger.info("Saved and continued")

    @handle_errors(stage="publish", error_class=AutomationError)
    def _publish(self, driver):
        self._click_and_wait(driver, "publish_continue", "publish", "Publish and continue")
        logger.info("Product published")

    @handle_errors(stage="url-capture", error_class=AutomationError)
    def _capture_url(self, driver) -> str:
        strategies = (
            ("input values", self._url_from_inputs),
            ("anchor links", self._url_from_anchors),
            ("page text", self._url_from_page_text),
            ("current location", self._url_from_location),
        )
        for label, strategy in strategies:
            url = strategy(driver)
            if url:
                logger.info(f"Product URL captured from {label}")
                return url
        raise AutomationError(
            "Product may be live on Gumroad but its URL could not be captured",
            stage="url-capture",
        )

    # ------------------------------------------------------------------
    # URL capture strategies
    # ------------------------------------------------------------------

    def _match_url(self, text: Optional[str]) -> Optional[str]:
        match = self.url_pattern.search((text or "").strip())
        return match.group(0) if match else None

    def _url_from_inputs(self, driver) -> Optional[str]:
        for element in driver.find_elements(By.TAG_NAME, "input"):
            url = self._match_url(element.get_attribute("value"))
            if url:
                return url
        return None

    def _url_from_anchors(self, driver) -> Optional[str]:
        for element in driver.find_elements(By.TAG_NAME, "a"):
            url = self._match_url(element.get_attribute("href"))
            if url:
                return url
        return None

    def _url_from_page_text(self, driver) -> Optional[str]:
        try:
            return self._match_url(driver.find_element(By.TAG_NAME, "body").text)
        except NoSuchElementException:
            return None

    def _url_from_location(self, driver) -> Optional[str]:
        parsed = urlparse(driver.current_url or "")
        hostname = (parsed.hostname or "").lower()
        host = self.config.gumroad_product_host.lower()
        if not hostname.endswith("." + host) or "/products/new" in parsed.path:
            return None
        subdomain = hostname[: -len(host) - 1]
        parts = [p for p in parsed.path.split("/") if p]
        if not subdomain or not parts or parts[-1] == "new":
            return None
        return self._match_url(f"https://{subdomain}.{host}/l/{parts[-1]}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _wait(self, driver) -> WebDriverWait:
        return WebDriverWait(driver, self.config.gumroad_step_timeout)

    def _wait_for(self, driver, key: str, stage: str):
        try:
            return self._wait(driver).until(lambda d: self.locators.find_first(d, key))
        except TimeoutException as e:
            raise AutomationError(f"Element '{key}' not found", stage=stage, original_exception=e) from e

    def _click_and_wait(self, driver, key: str, stage: str, label: str):
        try:
            button = self._wait(driver).until(lambda d: self.locators.find_first(d, key))
        except TimeoutException as e:
            raise AutomationError(f'Could not find "{label}" button', stage=stage, original_exception=e) from e

        before = driver.current_url
        button.click()
        try:
            self._wait(driver).until(lambda d: d.current_url != before)
        except TimeoutException as e:
            raise AutomationError(
                f'No navigation after clicking "{label}"', stage=stage, original_exception=e
            ) from e
        self._settle()

    def _tall_editors(self, driver) -> List:
        return [
            element
            for element in self.locators.find_all(driver, "description_editor")
            if _element_height(element) > MIN_EDITOR_HEIGHT
        ]

    def _settle(self):
        if self.settle_seconds:
            time.sleep(self.settle_seconds)

    def _save_screenshot(self, driver, stage: str):
        try:
            os.makedirs(self.screenshot_dir, exist_ok=True)
            name = f"gumroad_error_{stage.replace(':', '_')}_{datetime.now():%Y%m%d_%H%M%S}.png"
            path = os.path.join(self.screenshot_dir, name)
            driver.save_screenshot(path)
            logger.info(f"Saved failure screenshot: {path}")
        except (WebDriverException, OSError) as e:
            logger.warning(f"Could not save failure screenshot: {e}")

    def _failure(self, error: AutomationError) -> PublishResult:
        instructions = URL_CAPTURE_INSTRUCTIONS if error.stage == "url-capture" else MANUAL_INSTRUCTIONS
        return PublishResult(
            success=False,
            message=f"Failed to create Gumroad product at stage '{error.stage}': {error.message}",
            error=error.code,
            stage=error.stage,
            instructions=list(instructions),
        )
