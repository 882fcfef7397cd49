import logging
import os
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Tuple, Type

# 프로젝트 루트 경로 계산
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# 로그 파일 경로 설정
LOG_FILE = os.getenv(
    "LOG_FILE", os.path.join(PROJECT_ROOT, "logs", "marketplace.log")
)

os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.FileHandler(LOG_FILE, encoding="utf-8"), logging.StreamHandler()],
)


def get_logger(name):
    """이름을 기준으로 로거 인스턴스를 반환합니다."""
    return logging.getLogger(name)


logger = get_logger(__name__)


class MarketplaceError(Exception):
    """마켓플레이스 전 구간에서 사용하는 기본 예외. 생성 시점에 로그를 남긴다."""

    log_level = logging.ERROR

    def __init__(self, message, stage="Unknown", project_id=None, original_exception=None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.project_id = project_id
        self.original_exception = original_exception
        logger.log(
            self.log_level,
            f"[{type(self).__name__}] Stage: {self.stage}, Project ID: {self.project_id}, "
            f"Message: {self.message}, Original: {self.original_exception}",
        )


class ConfigError(MarketplaceError):
    """필수 설정(키/시크릿)이 누락된 경우."""


class ValidationError(MarketplaceError):
    """요청 페이로드가 잘못된 경우 (4xx)."""

    log_level = logging.WARNING


class PreconditionError(MarketplaceError):
    """상태 전제 조건 위반 (예: approved가 아닌 프로젝트 게시). 재시도하지 않는다."""

    log_level = logging.WARNING


class NotFoundError(MarketplaceError):
    """요청한 레코드가 존재하지 않는 경우 (404)."""

    log_level = logging.WARNING


class StorageError(MarketplaceError):
    """저장소 일시 장애. RetryPolicy의 재시도 대상."""


class VerificationError(MarketplaceError):
    """AI 검증 호출 또는 응답 파싱 실패."""


class CheckoutError(MarketplaceError):
    """결제 세션 생성 실패."""


class AutomationError(MarketplaceError):
    """브라우저 자동화 단계 실패. stage에 실패 단계 이름이 들어간다."""

    def __init__(self, message, stage, project_id=None, original_exception=None, code=None):
        super().__init__(message, stage=stage, project_id=project_id, original_exception=original_exception)
        self.code = code or f"automation_failed:{stage}"


def handle_errors(stage, error_class=MarketplaceError):
    """
    함수 실행 중 발생하는 예외를 처리하고 로깅하는 데코레이터.
    MarketplaceError가 아닌 예외는 error_class로 캡슐화한다.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            project_id = kwargs.get("project_id")
            try:
                return func(*args, **kwargs)
            except MarketplaceError:
                raise
            except Exception as e:
                error_message = f"'{func.__name__}' 함수 실행 중 오류 발생: {e}"
                raise error_class(
                    error_message,
                    stage=stage,
                    project_id=project_id,
                    original_exception=e,
                ) from e

        return wrapper

    return decorator


@dataclass(frozen=True)
class RetryPolicy:
    """고정 횟수/고정 지연 재시도 정책. 모든 저장소 호출 지점에서 공통으로 사용한다."""

    max_attempts: int = 3
    delay_seconds: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = field(default=(StorageError,))

    def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        label = getattr(func, "__name__", repr(func))
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except self.retry_on as e:
                logger.warning(f"Attempt {attempt}/{self.max_attempts} for {label} failed: {e}")
                if attempt == self.max_attempts:
                    logger.error(f"All {self.max_attempts} attempts for {label} failed.")
                    raise
                time.sleep(self.delay_seconds)
