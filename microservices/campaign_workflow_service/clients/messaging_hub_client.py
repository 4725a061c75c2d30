"""
Messaging Hub Client

Client for the messaging hub, which renders templates and delivers
email / SMS / push / in-app messages.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from core.config import ServiceConfig
from ..models import Recipient
from ..protocols import ChannelDeliveryError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class MessagingHubClient:
    """Client for the messaging hub"""

    def __init__(self, config: Optional[ServiceConfig] = None):
        if config is None:
            config = ServiceConfig.from_env()

        self.base_url = config.messaging_hub_url.rstrip("/")
        self.timeout = config.messaging_hub_timeout

    async def send_message(
        self,
        recipient: Recipient,
        channel: str,
        template_ref: str,
        variables: Dict[str, Any],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        """
        Submit a message for delivery.

        Args:
            recipient: Recipient with contact details
            channel: Channel value (email, sms, push, in_app)
            template_ref: Template identifier owned by the hub
            variables: Template variables
            idempotency_key: Stable per (enrollment, step) so a retried
                submission is not delivered twice

        Returns:
            Hub response with message_id and status

        Raises:
            ChannelDeliveryError: transient for timeouts, connection errors,
                429 and 5xx; permanent for other rejections
        """
        request_data = {
            "recipient_id": recipient.recipient_id,
            "channel": channel,
            "template_ref": template_ref,
            "variables": variables,
            "email": recipient.email,
            "phone": recipient.phone,
            "push_token": recipient.push_token,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/api/v1/messages",
                    json=request_data,
                    headers={"Idempotency-Key": idempotency_key},
                )
                response.raise_for_status()
                return response.json()

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(f"Messaging hub returned {status_code}: {e.response.text}")
            raise ChannelDeliveryError(
                f"Messaging hub returned {status_code}",
                transient=status_code in TRANSIENT_STATUS_CODES,
            )

        except httpx.TimeoutException as e:
            logger.warning(f"Messaging hub timed out: {e}")
            raise ChannelDeliveryError("Messaging hub timed out", transient=True)

        except httpx.HTTPError as e:
            logger.error(f"Error sending message: {e}")
            raise ChannelDeliveryError(str(e), transient=True)
