#!/usr/bin/env python3
"""
Core Module for the Campaign Workflow Engine

Shared infrastructure components used by the workflow service.

COMPONENTS:
    - config/: Environment-driven configuration (infra, peer services, engine tunables, logging)
    - postgres_client.py: asyncpg connection pool wrapper
    - nats_client.py: NATS event bus for event-driven architecture

USAGE:
    from core.config import get_settings
    from core.nats_client import NATSEventBus

    settings = get_settings()
    bus = NATSEventBus("campaign_workflow_service", settings.infrastructure)
"""

__all__ = []
