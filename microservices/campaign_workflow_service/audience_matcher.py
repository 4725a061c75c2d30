"""
Audience Matcher

Decides whether a recipient belongs to a campaign audience and enumerates
the audience lazily, page by page. Directory calls are retried with
exponential backoff; repeated failure surfaces as AudienceQueryError.
"""

import logging
from typing import AsyncIterator, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .models import AudienceCriteria, Recipient, utcnow
from .predicates import evaluate
from .protocols import AudienceQueryError, RecipientDirectoryProtocol

logger = logging.getLogger(__name__)


def criteria_match(recipient: Recipient, criteria: AudienceCriteria) -> bool:
    """True when the recipient satisfies every stated criterion"""
    if criteria.recipient_status is not None and recipient.status != criteria.recipient_status:
        return False
    if criteria.has_email is not None and bool(recipient.email) != criteria.has_email:
        return False
    if criteria.has_phone is not None and bool(recipient.phone) != criteria.has_phone:
        return False
    if (
        criteria.communication_opt_in is not None
        and recipient.communication_opt_in != criteria.communication_opt_in
    ):
        return False
    if any(tag not in recipient.tags for tag in criteria.tags):
        return False

    data = recipient.to_context()
    now = utcnow()
    return all(evaluate(attribute, data, now) for attribute in criteria.attributes)


def is_excluded(recipient: Recipient, exclusion: AudienceCriteria) -> bool:
    """An empty exclusion excludes nobody"""
    if exclusion.is_empty():
        return False
    return criteria_match(recipient, exclusion)


class AudienceMatcher:
    """Audience membership checks against the recipient directory"""

    def __init__(
        self,
        directory: RecipientDirectoryProtocol,
        page_size: int = 100,
        retry_attempts: int = 3,
        retry_wait_multiplier: float = 1.0,
    ):
        self.directory = directory
        self.page_size = page_size
        self.retry_attempts = retry_attempts
        self.retry_wait_multiplier = retry_wait_multiplier

    async def _call(self, func, *args, **kwargs):
        """Call the directory with retries on AudienceQueryError"""

        @retry(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_multiplier, max=10),
            retry=retry_if_exception_type(AudienceQueryError),
            reraise=True,
        )
        async def _retry_wrapper():
            return await func(*args, **kwargs)

        return await _retry_wrapper()

    async def fetch_recipient(self, recipient_id: str) -> Optional[Recipient]:
        """Live recipient record, or None when unknown"""
        return await self._call(self.directory.get_recipient, recipient_id)

    async def matches(
        self,
        recipient_id: str,
        criteria: AudienceCriteria,
        exclusion: AudienceCriteria,
    ) -> Optional[Recipient]:
        """
        Single-recipient audience check.

        Returns:
            The recipient when in the audience, otherwise None
        """
        recipient = await self.fetch_recipient(recipient_id)
        if recipient is None:
            logger.info(f"Recipient {recipient_id} not found in directory")
            return None
        if not criteria_match(recipient, criteria):
            return None
        if is_excluded(recipient, exclusion):
            logger.debug(f"Recipient {recipient_id} excluded from audience")
            return None
        return recipient

    async def enumerate(
        self,
        criteria: AudienceCriteria,
        exclusion: AudienceCriteria,
    ) -> AsyncIterator[Recipient]:
        """Yield matching recipients one directory page at a time"""
        cursor: Optional[str] = None
        while True:
            recipients, cursor = await self._call(
                self.directory.search_recipients, criteria, cursor, self.page_size
            )
            for recipient in recipients:
                if criteria_match(recipient, criteria) and not is_excluded(recipient, exclusion):
                    yield recipient
            if not cursor:
                break
