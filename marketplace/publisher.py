from typing import Callable, Optional

from .credentials import CredentialStore
from .gumroad_browser import GumroadBrowserClient, GumroadProduct, PublishResult
from .ledger import awaits_publish, is_fully_funded
from .store import MarketplaceStore
from .url_validator import ProductUrlValidator
from .utils import RetryPolicy, StorageError, get_logger

logger = get_logger(__name__)

PROJECT_NOT_FOUND = "project_not_found"
PROJECT_NOT_APPROVED = "project_not_approved"
PUBLISH_IN_PROGRESS = "publish_in_progress"
STORAGE_UNAVAILABLE = "storage_unavailable"
URL_VALIDATION_FAILED = "url_validation_failed"

FAILURE_INSTRUCTIONS = {
    PROJECT_NOT_FOUND: [
        "Check that the project id is correct",
        "Submit the project again if it was deleted",
    ],
    PROJECT_NOT_APPROVED: [
        "Only approved projects can be published",
        "Wait for verification to finish, or submit a new project if it was rejected",
    ],
    PUBLISH_IN_PROGRESS: [
        "Another publish for this project is already running",
        "Try again shortly",
    ],
    STORAGE_UNAVAILABLE: [
        "The project database is temporarily unavailable",
        "Try again shortly",
    ],
    URL_VALIDATION_FAILED: [
        "Gumroad reported a product URL that is not reachable",
        "Check https://gumroad.com/products before publishing again to avoid a duplicate",
        "If the product exists, copy its link and attach it to the project manually",
    ],
}


def _failure(error: str, message: str, stage: Optional[str] = None) -> PublishResult:
    return PublishResult(
        success=False,
        message=message,
        error=error,
        stage=stage,
        instructions=list(FAILURE_INSTRUCTIONS[error]),
    )


class PublishOrchestrator:
    """
    Retrying, idempotent control layer around GumroadBrowserClient.

    The browser flow runs at most once per call. Storage calls go through the
    shared RetryPolicy; a per-project lease keeps two publishes of the same
    project from running at the same time.
    """

    def __init__(
        self,
        store: MarketplaceStore,
        credentials: CredentialStore,
        client: GumroadBrowserClient,
        validator: Optional[Callable[[str], bool]] = None,
        policy: Optional[RetryPolicy] = None,
        lease_ttl_seconds: int = 900,
    ):
        self.store = store
        self.credentials = credentials
        self.client = client
        self.validator = validator or ProductUrlValidator()
        self.policy = policy or RetryPolicy()
        self.lease_ttl_seconds = lease_ttl_seconds
        logger.info("PublishOrchestrator 초기화 완료")

    def publish(self, project_id: str) -> PublishResult:
        logger.info(f"Publish requested - project ID: {project_id}")
        try:
            holder = self.policy.call(self.store.acquire_lease, project_id, self.lease_ttl_seconds)
        except StorageError:
            return _failure(STORAGE_UNAVAILABLE, "Could not reserve the project for publishing")
        if holder is None:
            logger.warning(f"Publish already in progress - project ID: {project_id}")
            return _failure(PUBLISH_IN_PROGRESS, "This project is already being published")

        try:
            return self._publish_reserved(project_id)
        finally:
            self._release(project_id, holder)

    def _publish_reserved(self, project_id: str) -> PublishResult:
        # 1. 프로젝트 조회
        try:
            project = self.policy.call(self.store.get_project, project_id)
        except StorageError:
            return _failure(STORAGE_UNAVAILABLE, "Project storage is unavailable, the project could not be loaded")
        if project is None:
            return _failure(PROJECT_NOT_FOUND, f"Project {project_id} does not exist")

        # 2. 상태 확인 (재시도 없음)
        if project.get("status") != "approved":
            logger.warning(f"Publish refused, status is '{project.get('status')}' - project ID: {project_id}")
            return _failure(PROJECT_NOT_APPROVED, "Project must be approved before publishing")

        # 3. 이미 게시된 프로젝트는 자동화를 다시 실행하지 않음
        if project.get("gumroad_link"):
            logger.info(f"Project already published: {project['gumroad_link']}")
            return PublishResult(
                success=True,
                message="Project is already published on Gumroad",
                product_url=project["gumroad_link"],
                already_published=True,
                persisted=True,
            )

        # 4. 자격 증명 조회 (없으면 드라이버가 login 단계에서 실패)
        try:
            credentials = self.policy.call(self.credentials.load, project["user_id"])
        except StorageError:
            logger.error(f"Credentials unavailable for user {project['user_id']}, continuing without them")
            credentials = None

        # 5. 브라우저 자동화 (1회만 실행)
        result = self.client.create_product(GumroadProduct.from_project(project), credentials)
        if not result.success:
            logger.error(f"Gumroad automation failed at '{result.stage}' - project ID: {project_id}: {result.error}")
            return result

        # 6. 실제 접근 가능한 URL인지 재검증
        if not self.validator(result.product_url):
            logger.error(f"Captured product URL failed live validation - project ID: {project_id}")
            return _failure(
                URL_VALIDATION_FAILED,
                "The captured Gumroad URL could not be verified as live",
                stage="url-validation",
            )

        # 7. 결과 저장 (실패해도 게시 자체는 성공으로 처리)
        result.persisted = self._persist_link(project_id, result.product_url)
        return result

    def _persist_link(self, project_id: str, product_url: str) -> bool:
        try:
            updated = self.policy.call(self.store.update_project, project_id, gumroad_link=product_url)
        except StorageError as e:
            logger.error(
                f"Gumroad product is live but saving its link failed - project ID: {project_id}, "
                f"URL: {product_url}. Reconcile manually. ({e})"
            )
            return False
        if not updated:
            logger.error(
                f"Gumroad product is live but project {project_id} no longer exists. URL: {product_url}"
            )
            return False
        logger.info(f"Gumroad link saved - project ID: {project_id}")
        return True

    def _release(self, project_id: str, holder: str):
        try:
            self.policy.call(self.store.release_lease, project_id, holder)
        except StorageError:
            logger.error(f"Publish lease release failed - project ID: {project_id}; it expires after its TTL")

    @staticmethod
    def is_eligible(project: Optional[dict], paid: bool = False) -> bool:
        """approved 상태이고 아직 게시되지 않았으며, 결제 또는 펀딩 목표 달성이 확인된 경우."""
        if not awaits_publish(project):
            return False
        return paid or is_fully_funded(project)
