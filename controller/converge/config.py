from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # Managed system backend: "memory" (in-process cluster) or "kubernetes"
    # Use the backends module for type-safe access: from converge.services.backends import get_backend_mode
    backend: str = "memory"

    # ==========================================================================
    # Scheduler Loop
    # ==========================================================================
    worker_count: int = 4  # Bounded worker pool size (distinct resources run in parallel)
    resync_period_seconds: float = 30.0  # Periodic tick: enqueue every resource to catch drift

    # ==========================================================================
    # Observed-State Tracker
    # ==========================================================================
    poll_interval_seconds: float = 10.0  # Default poll interval when a spec does not set one
    poll_failure_threshold: int = 3  # Consecutive poll failures before health becomes Unknown

    # ==========================================================================
    # Reconciler retry policy
    # ==========================================================================
    backoff_base_seconds: float = 1.0  # First retry delay
    backoff_cap_seconds: float = 60.0  # Maximum delay before jitter
    backoff_jitter: float = 0.2  # +/- fraction applied to every delay
    max_transient_attempts: Optional[int] = None  # None = retry transient failures forever

    # ==========================================================================
    # Kubernetes backend
    # ==========================================================================
    k8s_namespace: str = "default"  # Namespace used when a spec omits one
    k8s_container_name: Optional[str] = None  # Container to manage (None = first container)
    k8s_field_manager: str = "converge"  # fieldManager sent with every write
    k8s_managed_by_label: str = "converge"  # Value of app.kubernetes.io/managed-by on created workloads

    class Config:
        env_prefix = "CONVERGE_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False  # Allow lowercase env vars to match uppercase field names


@lru_cache()
def get_settings():
    return Settings()
