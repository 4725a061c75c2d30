"""
Recipient Directory Client

Client for the recipient directory: audience enumeration and live
recipient attributes (contact details, open balance, timezone).
"""

import logging
from typing import List, Optional, Tuple

import httpx

from core.config import ServiceConfig
from ..models import AudienceCriteria, Recipient
from ..protocols import AudienceQueryError

logger = logging.getLogger(__name__)


class RecipientDirectoryClient:
    """Client for the recipient directory"""

    def __init__(self, config: Optional[ServiceConfig] = None):
        if config is None:
            config = ServiceConfig.from_env()

        self.base_url = config.recipient_directory_url.rstrip("/")
        self.timeout = config.recipient_directory_timeout

    async def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        """
        Get a recipient by ID.

        Returns:
            Recipient, or None if the directory does not know the ID

        Raises:
            AudienceQueryError: directory unreachable or failing
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.base_url}/api/v1/recipients/{recipient_id}")
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                return Recipient.model_validate(response.json())

        except httpx.HTTPStatusError as e:
            logger.error(f"Error getting recipient {recipient_id}: {e.response.text}")
            raise AudienceQueryError(f"Directory returned {e.response.status_code}")

        except httpx.HTTPError as e:
            logger.error(f"Error getting recipient {recipient_id}: {e}")
            raise AudienceQueryError(str(e))

    async def search_recipients(
        self,
        criteria: AudienceCriteria,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> Tuple[List[Recipient], Optional[str]]:
        """
        Get one page of recipients matching the criteria.

        Args:
            criteria: Audience criteria forwarded to the directory
            cursor: Opaque cursor from the previous page
            limit: Page size

        Returns:
            (recipients, next_cursor); next_cursor is None on the last page
        """
        try:
            request_data = {
                "criteria": criteria.model_dump(mode="json", exclude_none=True),
                "cursor": cursor,
                "limit": limit,
            }

            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/api/v1/recipients/search",
                    json=request_data,
                )
                response.raise_for_status()
                body = response.json()

            recipients = [Recipient.model_validate(item) for item in body.get("recipients", [])]
            return recipients, body.get("next_cursor")

        except httpx.HTTPStatusError as e:
            logger.error(f"Error searching recipients: {e.response.text}")
            raise AudienceQueryError(f"Directory returned {e.response.status_code}")

        except httpx.HTTPError as e:
            logger.error(f"Error searching recipients: {e}")
            raise AudienceQueryError(str(e))
