from dataclasses import dataclass
from typing import Optional

from .store import MarketplaceStore
from .utils import ValidationError, get_logger

logger = get_logger(__name__)

_plaintext_warned = False


@dataclass(frozen=True)
class GumroadCredentials:
    email: str
    password: str

    def __repr__(self) -> str:
        return f"GumroadCredentials(email={self.email!r}, password='***')"


class CredentialStore:
    """
    Per-user Gumroad login storage.

    Credentials are written as plain text. This must be replaced with
    encryption at rest before any real deployment.
    """

    def __init__(self, store: MarketplaceStore):
        self.store = store

    def save(self, user_id: str, email: str, password: str) -> None:
        if not user_id or not (email or "").strip() or not password:
            raise ValidationError("user_id, email and password are required", stage="Credential Store")
        _warn_plaintext()
        self.store.set_credentials(user_id, email.strip(), password)
        logger.info(f"Gumroad credentials saved for user {user_id}")

    def load(self, user_id: str) -> Optional[GumroadCredentials]:
        if not user_id:
            return None
        record = self.store.get_credentials(user_id)
        if not record:
            return None
        return GumroadCredentials(email=record["email"], password=record["password"])

    def has_credentials(self, user_id: str) -> bool:
        return self.load(user_id) is not None


def _warn_plaintext():
    global _plaintext_warned
    if not _plaintext_warned:
        logger.warning("Gumroad credentials are stored unencrypted. Add encryption at rest before deploying.")
        _plaintext_warned = True
