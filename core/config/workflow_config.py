#!/usr/bin/env python3
"""Campaign workflow engine main configuration

Engine tunables (leasing, retry backoff, consent defaults, trigger
bookkeeping) plus the aggregate of all sub-configs.
"""
import os
from dataclasses import dataclass, field

from .infra_config import InfraConfig
from .logging_config import LoggingConfig
from .service_config import ServiceConfig


def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


# ===========================================
# Engine Tunables
# ===========================================

@dataclass
class SchedulerConfig:
    """Scheduler loop and lease settings"""
    lease_seconds: int = 30
    batch_size: int = 100
    poll_interval_seconds: float = 5.0
    worker_count: int = 1

    @classmethod
    def from_env(cls) -> 'SchedulerConfig':
        return cls(
            lease_seconds=_int(os.getenv("WORKFLOW_LEASE_SECONDS", "30"), 30),
            batch_size=_int(os.getenv("WORKFLOW_BATCH_SIZE", "100"), 100),
            poll_interval_seconds=float(os.getenv("WORKFLOW_POLL_INTERVAL", "5") or 5),
            worker_count=_int(os.getenv("WORKFLOW_WORKER_COUNT", "1"), 1),
        )


@dataclass
class RetryConfig:
    """Transient delivery failure backoff"""
    base_seconds: int = 60
    max_seconds: int = 3600
    max_attempts: int = 5

    @classmethod
    def from_env(cls) -> 'RetryConfig':
        return cls(
            base_seconds=_int(os.getenv("WORKFLOW_RETRY_BASE_SECONDS", "60"), 60),
            max_seconds=_int(os.getenv("WORKFLOW_RETRY_MAX_SECONDS", "3600"), 3600),
            max_attempts=_int(os.getenv("WORKFLOW_RETRY_MAX_ATTEMPTS", "5"), 5),
        )


@dataclass
class ConsentConfig:
    """Default consent, frequency cap and send window rules"""
    marketing_cap_count: int = 1
    marketing_cap_window_days: int = 7
    recontact_interval_days: int = 30
    marketing_window_start: str = "09:00"
    marketing_window_end: str = "20:00"
    waitlist_window_start: str = "08:00"
    waitlist_window_end: str = "21:00"
    default_timezone: str = "UTC"

    @classmethod
    def from_env(cls) -> 'ConsentConfig':
        return cls(
            marketing_cap_count=_int(os.getenv("MARKETING_CAP_COUNT", "1"), 1),
            marketing_cap_window_days=_int(os.getenv("MARKETING_CAP_WINDOW_DAYS", "7"), 7),
            recontact_interval_days=_int(os.getenv("RECONTACT_INTERVAL_DAYS", "30"), 30),
            marketing_window_start=os.getenv("MARKETING_WINDOW_START", "09:00"),
            marketing_window_end=os.getenv("MARKETING_WINDOW_END", "20:00"),
            waitlist_window_start=os.getenv("WAITLIST_WINDOW_START", "08:00"),
            waitlist_window_end=os.getenv("WAITLIST_WINDOW_END", "21:00"),
            default_timezone=os.getenv("DEFAULT_TIMEZONE", "UTC"),
        )


@dataclass
class TriggerConfig:
    """Trigger firing and audience query settings"""
    wait_grace_minutes: int = 5
    stale_run_minutes: int = 15
    audience_page_size: int = 100
    directory_retry_attempts: int = 3
    pending_event_batch_size: int = 100
    pending_event_max_age_hours: int = 72

    @classmethod
    def from_env(cls) -> 'TriggerConfig':
        return cls(
            wait_grace_minutes=_int(os.getenv("WORKFLOW_WAIT_GRACE_MINUTES", "5"), 5),
            stale_run_minutes=_int(os.getenv("TRIGGER_STALE_RUN_MINUTES", "15"), 15),
            audience_page_size=_int(os.getenv("AUDIENCE_PAGE_SIZE", "100"), 100),
            directory_retry_attempts=_int(os.getenv("DIRECTORY_RETRY_ATTEMPTS", "3"), 3),
            pending_event_batch_size=_int(os.getenv("PENDING_EVENT_BATCH_SIZE", "100"), 100),
            pending_event_max_age_hours=_int(os.getenv("PENDING_EVENT_MAX_AGE_HOURS", "72"), 72),
        )


@dataclass
class WorkflowEngineConfig:
    """Combined engine configuration"""
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    consent: ConsentConfig = field(default_factory=ConsentConfig)
    trigger: TriggerConfig = field(default_factory=TriggerConfig)
    use_memory_store: bool = False

    @classmethod
    def from_env(cls) -> 'WorkflowEngineConfig':
        return cls(
            scheduler=SchedulerConfig.from_env(),
            retry=RetryConfig.from_env(),
            consent=ConsentConfig.from_env(),
            trigger=TriggerConfig.from_env(),
            use_memory_store=_bool(os.getenv("WORKFLOW_MEMORY_STORE", "false")),
        )


# ===========================================
# Main Configuration
# ===========================================

@dataclass
class AppConfig:
    """Main application configuration with all sub-configs"""

    # Environment
    environment: str = "development"
    debug: bool = False

    # Service settings
    host: str = "0.0.0.0"
    port: int = 8251

    # Sub-configurations
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    services: ServiceConfig = field(default_factory=ServiceConfig)
    engine: WorkflowEngineConfig = field(default_factory=WorkflowEngineConfig)

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Load complete configuration from environment"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            # Environment
            environment=env,
            debug=_bool(os.getenv("DEBUG", "true" if env == "development" else "false")),

            # Service settings
            host=os.getenv("HOST", "0.0.0.0"),
            port=_int(os.getenv("SERVICE_PORT", "8251"), 8251),

            # Load sub-configs
            logging=LoggingConfig.from_env(),
            infrastructure=InfraConfig.from_env(),
            services=ServiceConfig.from_env(),
            engine=WorkflowEngineConfig.from_env(),
        )
