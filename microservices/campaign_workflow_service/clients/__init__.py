"""
Campaign Workflow Service Clients

Clients for calling peer services.
"""

from .messaging_hub_client import MessagingHubClient
from .recipient_directory_client import RecipientDirectoryClient

__all__ = [
    "MessagingHubClient",
    "RecipientDirectoryClient",
]
