"""
Locator strategies for the Gumroad product wizard.

Every element the browser client touches is looked up through an ordered
list of matchers; the first matcher that yields a visible element wins.
The defaults can be replaced per key from a JSON file, e.g.

    {
        "login_submit": [
            {"css": "button[data-testid='login']"},
            {"text": ["log", "in"]}
        ]
    }
"""

import json
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from selenium.common.exceptions import StaleElementReferenceException, WebDriverException
from selenium.webdriver.common.by import By

from .utils import ConfigError, get_logger

logger = get_logger(__name__)

CLICKABLE_SCOPE = "button, [role='button'], a"


@dataclass(frozen=True)
class Locator:
    """CSS 셀렉터 하나, 또는 scope 안에서 텍스트 부분 일치(모든 단어 포함)로 요소를 찾는다."""

    css: Optional[str] = None
    text: Tuple[str, ...] = ()
    scope: str = CLICKABLE_SCOPE

    def __post_init__(self):
        if not self.css and not self.text:
            raise ConfigError("Locator needs a 'css' selector or 'text' words", stage="Locators")

    @classmethod
    def from_dict(cls, data: dict) -> "Locator":
        words = data.get("text") or ()
        if isinstance(words, str):
            words = (words,)
        return cls(
            css=data.get("css"),
            text=tuple(w.lower() for w in words),
            scope=data.get("scope") or CLICKABLE_SCOPE,
        )

    def describe(self) -> str:
        if self.text:
            return f"text~{'+'.join(self.text)} in ({self.scope})"
        return f"css={self.css}"

    def matches(self, driver) -> List:
        """Visible elements matching this locator, in document order."""
        selector = self.css or self.scope
        try:
            candidates = driver.find_elements(By.CSS_SELECTOR, selector)
        except WebDriverException as e:
            logger.debug(f"Locator {self.describe()} lookup failed: {e}")
            return []
        found = []
        for element in candidates:
            try:
                if not element.is_displayed():
                    continue
                if self.text:
                    label = (element.text or "").lower()
                    if not all(word in label for word in self.text):
                        continue
            except StaleElementReferenceException:
                continue
            found.append(element)
        return found


def _css(*selectors: str) -> List[Locator]:
    return [Locator(css=s) for s in selectors]


DEFAULT_LOCATORS: Dict[str, List[Locator]] = {
    "login_email": _css(
        "input[type='email']",
        "input[name='email']",
        "#user_email",
        "input[placeholder*='email' i]",
    ),
    "login_password": _css(
        "input[type='password']",
        "input[name='password']",
        "#user_password",
        "input[placeholder*='password' i]",
    ),
    "login_submit": _css("button[type='submit']", "input[type='submit']")
    + [Locator(text=("login",)), Locator(text=("log", "in")), Locator(text=("sign", "in"))],
    "product_name": _css(
        "input[placeholder*='name' i]",
        "input[name='name']",
        "input[id*='name' i]",
    ),
    "product_price": _css(
        "input[placeholder*='price' i]",
        "input[name='price']",
        "input[type='number']",
        "[aria-label*='price' i]",
    ),
    "digital_product": [Locator(text=("digital", "product"), scope="button, [role='button'], div")],
    "next_customize": [Locator(text=("next", "customize"))],
    "description_editor": _css(
        "[role='textbox']",
        ".ProseMirror",
        "[contenteditable='true']",
        "textarea",
    ),
    "save_continue": [Locator(text=("save", "continue"))],
    "publish_continue": [Locator(text=("publish", "continue"))],
}


class LocatorSet:
    def __init__(self, strategies: Optional[Dict[str, Sequence[Locator]]] = None):
        self.strategies = {key: list(value) for key, value in DEFAULT_LOCATORS.items()}
        for key, value in (strategies or {}).items():
            self.strategies[key] = list(value)

    def __getitem__(self, key: str) -> List[Locator]:
        try:
            return self.strategies[key]
        except KeyError:
            raise ConfigError(f"Unknown locator key: {key}", stage="Locators") from None

    def find_first(self, driver, key: str):
        """첫 번째로 성공한 전략의 첫 요소를 반환하고, 없으면 None."""
        for locator in self[key]:
            elements = locator.matches(driver)
            if elements:
                logger.debug(f"Locator '{key}' matched via {locator.describe()}")
                return elements[0]
        return None

    def find_all(self, driver, key: str) -> List:
        """모든 전략의 결과를 중복 없이 순서대로 모은다."""
        seen = set()
        found = []
        for locator in self[key]:
            for element in locator.matches(driver):
                marker = getattr(element, "id", None) or id(element)
                if marker in seen:
                    continue
                seen.add(marker)
                found.append(element)
        return found


def load_locators(path: Optional[str] = None) -> LocatorSet:
    """기본 로케이터에 JSON 파일의 키별 오버라이드를 덮어쓴다."""
    if not path:
        return LocatorSet()
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read locator file {path}: {e}", stage="Locators", original_exception=e) from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Locator file {path} must contain a JSON object", stage="Locators")

    overrides = {}
    for key, entries in raw.items():
        if key not in DEFAULT_LOCATORS:
            raise ConfigError(f"Unknown locator key in {path}: {key}", stage="Locators")
        if not isinstance(entries, list) or not entries:
            raise ConfigError(f"Locator '{key}' must be a non-empty list", stage="Locators")
        overrides[key] = [Locator.from_dict(entry) for entry in entries]
    logger.info(f"Loaded locator overrides from {path}: {sorted(overrides)}")
    return LocatorSet(overrides)
