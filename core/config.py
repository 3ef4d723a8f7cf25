"""Runtime configuration for the billing core.

Values come from environment variables, optionally loaded from a ``.env`` file
at the repository root.
"""

import os
from decimal import Decimal
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_DB_PATH = REPO_ROOT / "billing_ledger.db"
DEFAULT_ARTIFACTS_DIR = REPO_ROOT / "artifacts"

# Matches the provider's own rounding slack on an invoice total
AMOUNT_TOLERANCE = Decimal("0.05")


class BillingSettings(BaseModel):
    """Tunable knobs for one billing deployment."""

    db_path: Path = DEFAULT_DB_PATH
    artifacts_dir: Path = DEFAULT_ARTIFACTS_DIR

    # Upstream feed collection
    feed_base_url: str = "https://api.shipbob.com/2025-07"
    feed_api_token: Optional[str] = None
    feed_timeout_seconds: int = Field(30, ge=1)
    feed_page_size: int = Field(250, ge=1)
    feed_max_workers: int = Field(4, ge=1)
    feed_max_retries: int = Field(3, ge=0)
    feed_initial_delay: float = 1.0
    feed_max_delay: float = 30.0

    # Pending-dependency queue
    pending_max_attempts: int = Field(5, ge=1)
    pending_max_age_hours: int = Field(7 * 24, ge=1)
    pending_base_delay_minutes: int = Field(15, ge=0)

    # Reconciliation thresholds
    tolerance_pct: Decimal = Decimal("1.0")
    absolute_tolerance: Decimal = AMOUNT_TOLERANCE
    upstream_only_pct: Decimal = Decimal("10.0")

    # Assembly / admin
    assembly_lock_ttl_seconds: int = Field(900, ge=1)
    max_reset_batch: int = Field(500, ge=1)
    preflight_gate: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Temporal
    temporal_endpoint: Optional[str] = None
    temporal_namespace: str = "default"
    temporal_api_key: Optional[str] = None
    temporal_task_queue: str = "billing-task-queue"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "BillingSettings":
        env_path = env_file or (REPO_ROOT / ".env")
        if env_path.exists():
            load_dotenv(env_path)

        mapping = {
            "db_path": "BILLING_DB_PATH",
            "artifacts_dir": "BILLING_ARTIFACTS_DIR",
            "feed_base_url": "BILLING_FEED_BASE_URL",
            "feed_api_token": "BILLING_FEED_API_TOKEN",
            "feed_timeout_seconds": "BILLING_FEED_TIMEOUT",
            "feed_page_size": "BILLING_FEED_PAGE_SIZE",
            "feed_max_workers": "BILLING_FEED_MAX_WORKERS",
            "feed_max_retries": "BILLING_FEED_MAX_RETRIES",
            "feed_initial_delay": "BILLING_FEED_INITIAL_DELAY",
            "feed_max_delay": "BILLING_FEED_MAX_DELAY",
            "pending_max_attempts": "BILLING_PENDING_MAX_ATTEMPTS",
            "pending_max_age_hours": "BILLING_PENDING_MAX_AGE_HOURS",
            "pending_base_delay_minutes": "BILLING_PENDING_BASE_DELAY_MINUTES",
            "tolerance_pct": "BILLING_TOLERANCE_PCT",
            "absolute_tolerance": "BILLING_ABSOLUTE_TOLERANCE",
            "upstream_only_pct": "BILLING_UPSTREAM_ONLY_PCT",
            "assembly_lock_ttl_seconds": "BILLING_ASSEMBLY_LOCK_TTL",
            "max_reset_batch": "BILLING_MAX_RESET_BATCH",
            "preflight_gate": "BILLING_PREFLIGHT_GATE",
            "log_level": "BILLING_LOG_LEVEL",
            "log_json": "BILLING_LOG_JSON",
            "temporal_endpoint": "TEMPORAL_ENDPOINT",
            "temporal_namespace": "TEMPORAL_NAMESPACE",
            "temporal_api_key": "TEMPORAL_API_KEY",
            "temporal_task_queue": "TEMPORAL_TASK_QUEUE",
        }
        values = {}
        for field_name, env_name in mapping.items():
            raw = os.getenv(env_name)
            if raw is not None and raw != "":
                values[field_name] = raw
        return cls.model_validate(values)


_settings: Optional[BillingSettings] = None


def get_settings() -> BillingSettings:
    global _settings
    if _settings is None:
        _settings = BillingSettings.from_env()
    return _settings
