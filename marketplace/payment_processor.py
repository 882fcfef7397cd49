from typing import Any, Dict, Optional

import stripe

from .config import Config
from .store import MarketplaceStore
from .utils import (
    CheckoutError,
    ConfigError,
    NotFoundError,
    PreconditionError,
    RetryPolicy,
    ValidationError,
    get_logger,
)

logger = get_logger(__name__)


class CheckoutService:
    """Stripe Checkout 세션을 생성하는 클래스 (승인된 프로젝트만 결제 가능)"""

    def __init__(self, config: Config, store: MarketplaceStore, policy: Optional[RetryPolicy] = None):
        if not config.stripe_secret_key:
            raise ConfigError(
                "STRIPE_SECRET_KEY 환경 변수가 설정되지 않았습니다.",
                stage="CheckoutService Init",
            )
        self.api_key = config.stripe_secret_key
        self.base_url = config.base_url.rstrip("/")
        self.store = store
        self.policy = policy or RetryPolicy()
        self._mode = config.stripe_mode

        if self._mode == "test":
            logger.warning("Stripe is running in TEST mode. No real charges will be made.")
        elif self._mode == "live":
            logger.info("Stripe is running in LIVE mode. Real charges will be processed.")
        else:
            logger.error("Invalid Stripe secret key format. Must start with sk_test_ or sk_live_")
        logger.info("CheckoutService 초기화 완료")

    def mode(self) -> str:
        return self._mode

    def create_session(self, project_id: str, title: Optional[str] = None, price=None) -> Dict[str, Any]:
        """체크아웃 세션을 생성하고 {url, session_id}를 반환합니다."""
        logger.info(f"체크아웃 생성 요청 - 프로젝트 ID: {project_id}")
        if not project_id:
            raise ValidationError("'project_id' is required", stage="Checkout")

        project = self.policy.call(self.store.get_project, project_id)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found", stage="Checkout", project_id=project_id)
        if project.get("status") != "approved":
            raise PreconditionError(
                "Project not approved for purchase", stage="Checkout", project_id=project_id
            )

        title = title or project["title"]
        try:
            final_price = float(price if price is not None else project.get("price"))
        except (TypeError, ValueError):
            raise ValidationError("Invalid price", stage="Checkout", project_id=project_id) from None
        if final_price <= 0:
            raise ValidationError("Invalid price", stage="Checkout", project_id=project_id)

        price_data = {
            "currency": "usd",
            "product_data": {
                "name": title,
                "description": f"Purchase access to {title}",
            },
            "unit_amount": int(round(final_price * 100)),  # cents
        }
        mode = "payment"
        if project.get("is_subscription"):
            mode = "subscription"
            price_data["recurring"] = {"interval": project.get("interval") or "month"}

        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                payment_method_types=["card"],
                line_items=[{"price_data": price_data, "quantity": 1}],
                mode=mode,
                success_url=f"{self.base_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.base_url}/project/{project_id}",
                metadata={"project_id": project_id, "mode": self._mode},
            )
        except stripe.StripeError as e:
            raise CheckoutError(
                f"Stripe API error: {e}", stage="Checkout", project_id=project_id, original_exception=e
            ) from e

        logger.info(f"Stripe session created - ID: {session.id}, mode: {mode}")
        return {"url": session.url, "session_id": session.id}
