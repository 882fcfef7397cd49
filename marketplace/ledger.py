"""
Conversion ledger: idempotent crediting of offerwall conversions.

The stored conversion event is the source of truth. The project's
funded_amount is a best-effort running total that can be reconciled
against the events (see ConversionLedger.reconcile).
"""

from dataclasses import dataclass
from typing import Callable, Optional

from .postback import DEFAULT_PROVIDER, parse_payout
from .store import MarketplaceStore
from .utils import MarketplaceError, ValidationError, get_logger

logger = get_logger(__name__)

# funded_amount 비교 시 부동소수점 오차 허용치
_EPSILON = 1e-9


@dataclass
class ConversionOutcome:
    accepted: bool
    duplicate: bool
    unlocked: bool = False

    def to_dict(self):
        return {"ok": self.accepted, "duplicated": self.duplicate, "unlocked": self.unlocked}


@dataclass
class FundingStatus:
    funded_amount: float
    price: float
    progress_percent: float
    remaining: float
    fully_funded: bool

    def to_dict(self):
        return {
            "funded_amount": round(self.funded_amount, 2),
            "price": self.price,
            "progress_percent": self.progress_percent,
            "remaining": round(self.remaining, 2),
            "fully_funded": self.fully_funded,
        }


def conversion_key(provider: str, transaction_id: str) -> str:
    return f"{provider}:{transaction_id}"


def is_fully_funded(project: dict) -> bool:
    price = float(project.get("price") or 0.0)
    funded = float(project.get("funded_amount") or 0.0)
    return price > 0 and funded + _EPSILON >= price


def awaits_publish(project: Optional[dict]) -> bool:
    """approved 상태이고 아직 Gumroad 링크가 없는 프로젝트."""
    return bool(project) and project.get("status") == "approved" and not project.get("gumroad_link")


def funding_status(project: dict) -> FundingStatus:
    price = float(project.get("price") or 0.0)
    funded = float(project.get("funded_amount") or 0.0)
    progress = min(funded / price * 100.0, 100.0) if price > 0 else 0.0
    return FundingStatus(
        funded_amount=funded,
        price=price,
        progress_percent=round(progress, 1),
        remaining=max(price - funded, 0.0),
        fully_funded=is_fully_funded(project),
    )


class ConversionLedger:
    def __init__(self, store: MarketplaceStore, on_unlock: Optional[Callable[[str], None]] = None):
        self.store = store
        self.on_unlock = on_unlock

    def record_conversion(
        self,
        provider: str,
        transaction_id: str,
        user_id: str,
        project_id: Optional[str] = None,
        payout=0.0,
        raw_params: Optional[dict] = None,
    ) -> ConversionOutcome:
        """
        Record one conversion at most once per (provider, transaction_id).

        Raises ValidationError for a malformed event and StorageError when the
        duplicate check or the insert fails; callers are expected to retry.
        """
        transaction_id = (transaction_id or "").strip()
        user_id = (user_id or "").strip()
        if not transaction_id or not user_id:
            raise ValidationError("Missing user_id or transaction_id", stage="Conversion Ledger")

        provider = (provider or "").strip() or DEFAULT_PROVIDER
        project_id = (project_id or "").strip() or None
        payout = parse_payout(payout)
        key = conversion_key(provider, transaction_id)

        if self.store.get_conversion(key):
            logger.info(f"Duplicate conversion ignored: {key}")
            return ConversionOutcome(accepted=True, duplicate=True)

        created = self.store.create_conversion_if_absent(
            key,
            {
                "provider": provider,
                "transaction_id": transaction_id,
                "user_id": user_id,
                "project_id": project_id,
                "payout": payout,
                "raw_params": raw_params or {},
            },
        )
        if not created:
            logger.info(f"Duplicate conversion lost insert race: {key}")
            return ConversionOutcome(accepted=True, duplicate=True)

        logger.info(f"Conversion recorded: {key} user={user_id} project={project_id} payout={payout}")

        unlocked = False
        if project_id and payout > 0:
            unlocked = self._apply_funding(project_id, payout)
        return ConversionOutcome(accepted=True, duplicate=False, unlocked=unlocked)

    def _apply_funding(self, project_id: str, payout: float) -> bool:
        try:
            if not self.store.increment_funded_amount(project_id, payout):
                logger.warning(f"Funding increment skipped, project {project_id} not found (payout={payout})")
                return False
        except MarketplaceError as e:
            logger.error(f"Funding increment failed for project {project_id} (payout={payout}): {e}")
            return False

        try:
            project = self.store.get_project(project_id)
        except MarketplaceError as e:
            logger.warning(f"Could not re-read project {project_id} after funding: {e}")
            return False
        if not project or not self._crossed_threshold(project, payout):
            return False

        logger.info(f"Project {project_id} is fully funded ({project['funded_amount']}/{project['price']})")
        if not awaits_publish(project):
            return False

        if self.on_unlock:
            try:
                self.on_unlock(project_id)
            except Exception as e:
                logger.error(f"Funding unlock callback failed for project {project_id}: {e}")
        return True

    @staticmethod
    def _crossed_threshold(project: dict, payout: float) -> bool:
        after = float(project.get("funded_amount") or 0.0)
        before = after - payout
        price = float(project.get("price") or 0.0)
        return before + _EPSILON < price <= after + _EPSILON

    def reconcile(self, project_id: str) -> dict:
        """Compare recorded payouts with the project's running total. Read-only."""
        project = self.store.get_project(project_id)
        if not project:
            return {"project_id": project_id, "found": False}
        conversions = self.store.list_conversions(project_id=project_id)
        recorded = sum(c["payout"] for c in conversions if c["payout"] > 0)
        funded = float(project.get("funded_amount") or 0.0)
        return {
            "project_id": project_id,
            "found": True,
            "conversions": len(conversions),
            "recorded_total": round(recorded, 2),
            "funded_amount": round(funded, 2),
            "difference": round(recorded - funded, 2),
            "consistent": abs(recorded - funded) < 0.005,
        }
