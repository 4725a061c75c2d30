#!/usr/bin/env python3
"""Service configuration for peer services

Endpoints of the collaborators the workflow engine calls over HTTP:
the recipient directory (audience queries, live recipient attributes)
and the messaging hub (actual email/SMS/push transport).
"""
import os
from dataclasses import dataclass

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


@dataclass
class ServiceConfig:
    """Peer service endpoints"""

    # ===========================================
    # Recipient Directory
    # ===========================================
    recipient_directory_url: str = "http://localhost:8202"
    recipient_directory_timeout: float = 10.0

    # ===========================================
    # Messaging Hub
    # ===========================================
    messaging_hub_url: str = "http://localhost:8206"
    messaging_hub_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> 'ServiceConfig':
        """Load service configuration from environment variables"""
        return cls(
            recipient_directory_url=os.getenv("RECIPIENT_DIRECTORY_URL", "http://localhost:8202"),
            recipient_directory_timeout=_float(os.getenv("RECIPIENT_DIRECTORY_TIMEOUT", "10"), 10.0),
            messaging_hub_url=os.getenv("MESSAGING_HUB_URL", "http://localhost:8206"),
            messaging_hub_timeout=_float(os.getenv("MESSAGING_HUB_TIMEOUT", "10"), 10.0),
        )
