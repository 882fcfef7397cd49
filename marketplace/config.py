import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable, Optional

from dotenv import load_dotenv

from .utils import ConfigError

# .env 파일에서 환경 변수 로드
PROJECT_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(PROJECT_ROOT / ".env")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


@dataclass(frozen=True)
class Config:
    """프로세스 시작 시 한 번 생성되어 각 컴포넌트에 주입되는 설정 객체."""

    # 데이터베이스 URL (기본: SQLite 파일)
    database_url: str = f"sqlite:///{PROJECT_ROOT}/data/marketplace.db"

    # AI 검증 (OpenAI 호환 Chat Completions)
    openai_api_key: Optional[str] = None
    ai_api_base: str = "https://api.openai.com/v1"
    ai_verify_model: str = "gpt-4"

    # Stripe 결제
    stripe_secret_key: Optional[str] = None
    base_url: str = "http://localhost:5000"

    # 오퍼월 콜백 공유 시크릿 (없으면 모든 호출 허용)
    offerwall_callback_token: Optional[str] = None

    # Gumroad 브라우저 자동화
    gumroad_base_url: str = "https://gumroad.com"
    gumroad_product_host: str = "gumroad.com"
    gumroad_profile_dir: str = str(PROJECT_ROOT / ".gumroad_profile")
    gumroad_headless: bool = False
    chrome_path: Optional[str] = None
    gumroad_step_timeout: int = 120
    gumroad_locators_file: Optional[str] = None

    # 게시 리스 / 저장소 재시도
    publish_lease_ttl_seconds: int = 900
    storage_retry_attempts: int = 3
    storage_retry_delay: float = 1.0

    # 펀딩 목표 달성 시 자동 게시
    auto_publish_on_funded: bool = False

    server_host: str = "127.0.0.1"
    server_port: int = 5000

    @classmethod
    def from_env(cls) -> "Config":
        defaults = cls()
        return cls(
            database_url=_env_str("DATABASE_URL") or defaults.database_url,
            openai_api_key=_env_str("OPENAI_API_KEY"),
            ai_api_base=_env_str("AI_API_BASE") or defaults.ai_api_base,
            ai_verify_model=_env_str("AI_VERIFY_MODEL") or defaults.ai_verify_model,
            stripe_secret_key=_env_str("STRIPE_SECRET_KEY"),
            base_url=_env_str("BASE_URL") or defaults.base_url,
            offerwall_callback_token=_env_str("OFFERWALL_CALLBACK_TOKEN"),
            gumroad_base_url=_env_str("GUMROAD_BASE_URL") or defaults.gumroad_base_url,
            gumroad_product_host=_env_str("GUMROAD_PRODUCT_HOST") or defaults.gumroad_product_host,
            gumroad_profile_dir=_env_str("GUMROAD_PROFILE_DIR") or defaults.gumroad_profile_dir,
            gumroad_headless=_env_bool("GUMROAD_HEADLESS", defaults.gumroad_headless),
            chrome_path=_env_str("CHROME_PATH"),
            gumroad_step_timeout=int(os.getenv("GUMROAD_STEP_TIMEOUT", defaults.gumroad_step_timeout)),
            gumroad_locators_file=_env_str("GUMROAD_LOCATORS_FILE"),
            publish_lease_ttl_seconds=int(
                os.getenv("PUBLISH_LEASE_TTL_SECONDS", defaults.publish_lease_ttl_seconds)
            ),
            storage_retry_attempts=int(os.getenv("STORAGE_RETRY_ATTEMPTS", defaults.storage_retry_attempts)),
            storage_retry_delay=float(os.getenv("STORAGE_RETRY_DELAY", defaults.storage_retry_delay)),
            auto_publish_on_funded=_env_bool("AUTO_PUBLISH_ON_FUNDED", defaults.auto_publish_on_funded),
            server_host=_env_str("SERVER_HOST") or defaults.server_host,
            server_port=int(os.getenv("SERVER_PORT", defaults.server_port)),
        )

    def with_overrides(self, **kwargs) -> "Config":
        return replace(self, **kwargs)

    @property
    def stripe_mode(self) -> str:
        key = self.stripe_secret_key or ""
        if key.startswith("sk_live_"):
            return "live"
        if key.startswith("sk_test_") or not key:
            return "test"
        return "invalid"

    # 필요한 설정이 있는지 확인
    def validate(self, required: Iterable[str]) -> None:
        missing = [name for name in required if not getattr(self, name, None)]
        if missing:
            raise ConfigError(
                f"필수 설정이 누락되었습니다: {', '.join(missing)}. .env 파일을 확인해주세요.",
                stage="Config Validation",
            )
