"""
Public portfolio view.
Read-only path keyed by share slug; no mutations, no subscriptions.
"""
import logging

from progress_core.constants import COLLECTION_PORTFOLIO, COLLECTION_PROJECTS
from progress_core.exceptions import ValidationException, RemoteError, decode_remote_error
from progress_core.interfaces import PersistenceService
from progress_core.schemas import PublicPortfolio

logger = logging.getLogger("progress_core.public_view")


class PublicViewService:
    """Service for unauthenticated portfolio reads"""

    def __init__(self, persistence: PersistenceService):
        self.persistence = persistence

    async def fetch_public_portfolio(self, share_slug: str) -> PublicPortfolio:
        """
        Fetch a shared portfolio and its projects.

        Raises:
            ValidationException: If the slug is empty
            NotFoundException: If no portfolio has this slug
            UnknownRemoteException, PermissionDeniedException: On other read failures
        """
        if not share_slug or not share_slug.strip():
            raise ValidationException("share_slug", "must not be empty")

        try:
            portfolio = await self.persistence.fetch_one(COLLECTION_PORTFOLIO, {"share_slug": share_slug})
        except RemoteError as e:
            raise decode_remote_error(e, COLLECTION_PORTFOLIO, share_slug) from e

        try:
            projects = await self.persistence.fetch_all(COLLECTION_PROJECTS, portfolio.user_id)
        except RemoteError as e:
            logger.error(f"Error fetching public projects for {share_slug}: {e}")
            raise decode_remote_error(e, COLLECTION_PROJECTS) from e

        return PublicPortfolio(portfolio=portfolio, projects=projects)
