import math
from dataclasses import dataclass
from datetime import date
from typing import Optional

from .ai_verifier import ProjectVerifier
from .gumroad_browser import PublishResult
from .publisher import PublishOrchestrator
from .store import PROJECT_STATUSES, PROJECT_TYPES, MarketplaceStore
from .utils import NotFoundError, PreconditionError, RetryPolicy, ValidationError, get_logger

logger = get_logger(__name__)

SUBSCRIPTION_INTERVALS = ("month", "year")
_VERIFIED_FIELDS = ("title", "description", "project_type", "google_drive_link", "deadline")


@dataclass
class VerificationOutcome:
    approved: bool
    reason: str
    publish: Optional[PublishResult] = None

    def to_dict(self):
        return {
            "approved": self.approved,
            "reason": self.reason,
            "publish": self.publish.to_dict() if self.publish else None,
        }


def _required_text(fields: dict, name: str) -> str:
    value = fields.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{name}' is required", stage="Project Submission")
    return value.strip()


def validate_submission(fields: dict) -> dict:
    """제출 필드를 검증하고 저장 가능한 형태로 정리합니다."""
    if not isinstance(fields, dict):
        raise ValidationError("Project fields must be an object", stage="Project Submission")

    title = _required_text(fields, "title")
    description = _required_text(fields, "description")
    google_drive_link = _required_text(fields, "google_drive_link")

    project_type = fields.get("project_type")
    if project_type not in PROJECT_TYPES:
        raise ValidationError(
            f"'project_type' must be one of {', '.join(PROJECT_TYPES)}", stage="Project Submission"
        )

    try:
        price = float(fields.get("price"))
    except (TypeError, ValueError):
        raise ValidationError("'price' must be a number", stage="Project Submission") from None
    if not math.isfinite(price) or price <= 0:
        raise ValidationError("'price' must be greater than 0", stage="Project Submission")

    is_subscription = bool(fields.get("is_subscription", False))
    interval = fields.get("interval") if is_subscription else None
    if is_subscription and interval not in SUBSCRIPTION_INTERVALS:
        raise ValidationError("'interval' must be 'month' or 'year' for subscriptions", stage="Project Submission")

    deadline = fields.get("deadline") or None
    if deadline is not None:
        try:
            date.fromisoformat(str(deadline))
        except ValueError:
            raise ValidationError("'deadline' must be an ISO date (YYYY-MM-DD)", stage="Project Submission") from None

    return {
        "title": title,
        "description": description,
        "project_type": project_type,
        "price": price,
        "is_subscription": is_subscription,
        "interval": interval,
        "deadline": deadline,
        "google_drive_link": google_drive_link,
    }


class VerificationPipeline:
    """
    제출 -> AI 검증 -> 상태 전환 -> 게시를 한 단위로 처리합니다.

    승인 상태는 게시 시도 전에 먼저 저장됩니다. 게시가 실패해도 프로젝트는
    approved로 남고 나중에 다시 게시할 수 있습니다.
    """

    def __init__(
        self,
        store: MarketplaceStore,
        verifier: Optional[ProjectVerifier],
        orchestrator: Optional[PublishOrchestrator] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.orchestrator = orchestrator
        self.policy = policy or RetryPolicy()

    def submit_project(self, user_id: str, fields: dict) -> dict:
        if not user_id:
            raise ValidationError("'user_id' is required", stage="Project Submission")
        clean = validate_submission(fields)
        project = self.policy.call(self.store.create_project, user_id, clean)
        logger.info(f"Project submitted - ID: {project['id']}, user: {user_id}")
        return project

    def get_project(self, project_id: str) -> dict:
        project = self.policy.call(self.store.get_project, project_id)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found", stage="Project Lookup", project_id=project_id)
        return project

    def list_projects(self, user_id: Optional[str] = None, status: Optional[str] = None):
        """사용자별 목록, 또는 상태별 공개 목록 (예: 구매 가능한 approved 프로젝트)."""
        if not user_id and not status:
            raise ValidationError("'user_id' or 'status' is required", stage="Project Listing")
        if status and status not in PROJECT_STATUSES:
            raise ValidationError(
                f"'status' must be one of {', '.join(PROJECT_STATUSES)}", stage="Project Listing"
            )
        return self.policy.call(self.store.list_projects, user_id=user_id, status=status)

    def delete_project(self, project_id: str) -> bool:
        deleted = self.policy.call(self.store.delete_project, project_id)
        if not deleted:
            raise NotFoundError(f"Project {project_id} not found", stage="Project Delete", project_id=project_id)
        return True

    def verify(self, project_id: str, fields: Optional[dict] = None) -> VerificationOutcome:
        if self.verifier is None:
            raise PreconditionError("AI verification is not configured", stage="Verification")

        project = self.get_project(project_id)
        if project.get("status") != "pending":
            raise PreconditionError(
                f"Project is already {project.get('status')}", stage="Verification", project_id=project_id
            )

        # 요청에 포함된 필드가 있으면 AI 호출에만 우선 적용
        data = {name: project.get(name) for name in _VERIFIED_FIELDS}
        data.update({k: v for k, v in (fields or {}).items() if k in _VERIFIED_FIELDS and v})

        result = self.verifier.verify(
            data["title"],
            data["description"],
            data["project_type"],
            google_drive_link=data["google_drive_link"],
            deadline=data["deadline"],
        )

        if not result.approved:
            self.policy.call(
                self.store.update_project, project_id, status="rejected", rejection_reason=result.reason
            )
            logger.info(f"Project rejected - ID: {project_id}, reason: {result.reason}")
            return VerificationOutcome(approved=False, reason=result.reason)

        # 승인 상태를 먼저 저장한 뒤 게시
        self.policy.call(self.store.update_project, project_id, status="approved", rejection_reason=None)
        logger.info(f"Project approved - ID: {project_id}")

        publish = None
        if self.orchestrator is not None:
            publish = self.orchestrator.publish(project_id)
            if not publish.success:
                logger.warning(
                    f"Project {project_id} approved but publish failed ({publish.error}); it can be retried later"
                )
        return VerificationOutcome(approved=True, reason=result.reason, publish=publish)
