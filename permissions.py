import logging
from typing import Iterable, Optional, Set

from config import settings as default_settings
from errors import PermissionDenied
from models import AuthorizationTier

logger = logging.getLogger(__name__)

class PermissionResolver:
    """
    Role-based access control: owner > admin > user.

    Tiers are computed from the caller's identity and roles on every call;
    nothing is cached since role membership can change between commands.
    """

    def __init__(self, owner_id: Optional[str] = None, admin_role_ids: Optional[Iterable[str]] = None):
        self.owner_id = owner_id or None
        self.admin_role_ids: Set[str] = set(admin_role_ids or ())
        if not self.owner_id:
            logger.warning("BOT_OWNER_ID not configured; no caller will resolve to owner")

    @classmethod
    def from_settings(cls, settings=None) -> "PermissionResolver":
        settings = settings or default_settings
        return cls(owner_id=settings.BOT_OWNER_ID, admin_role_ids=settings.admin_role_ids)

    def resolve_tier(
        self,
        caller_identity: str,
        caller_roles: Iterable[str] = (),
        is_administrator: bool = False,
    ) -> AuthorizationTier:
        if self.owner_id and caller_identity == self.owner_id:
            return AuthorizationTier.OWNER

        if is_administrator or self.admin_role_ids.intersection(caller_roles):
            return AuthorizationTier.ADMIN

        return AuthorizationTier.USER

    @staticmethod
    def require_tier(actual: AuthorizationTier, minimum: AuthorizationTier) -> None:
        if actual < minimum:
            raise PermissionDenied(required=minimum, actual=actual)
