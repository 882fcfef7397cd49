import requests

from .utils import get_logger

logger = get_logger(__name__)


class ProductUrlValidator:
    """Live reachability check for a captured product URL."""

    def __init__(self, timeout: float = 15.0):
        self.timeout = timeout

    def is_reachable(self, url: str) -> bool:
        if not url:
            return False
        try:
            resp = requests.head(url, allow_redirects=True, timeout=self.timeout)
            # 일부 서버는 HEAD를 허용하지 않음
            if resp.status_code in (403, 405):
                resp = requests.get(url, allow_redirects=True, timeout=self.timeout)
            if resp.status_code >= 400:
                logger.warning(f"Product URL returned {resp.status_code}: {url}")
                return False
            return True
        except requests.exceptions.Timeout:
            logger.warning(f"Product URL check timed out: {url}")
            return False
        except requests.exceptions.RequestException as e:
            logger.warning(f"Product URL check failed for {url}: {e}")
            return False

    __call__ = is_reachable
