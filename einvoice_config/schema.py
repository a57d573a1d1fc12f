"""
Settings schema.

Frozen dataclasses, one per section of ``defaults.yaml``.  The loader
builds them; everything else only reads them.
"""

from dataclasses import dataclass, field

MIN_POOL_SIZE = 1
MAX_POOL_SIZE = 64


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///einvoice.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10


@dataclass(frozen=True)
class FbrSettings:
    base_url: str = "https://gw.fbr.gov.pk"
    sandbox_submit_path: str = "/di_data/v1/di/postinvoicedata_sb"
    production_submit_path: str = "/di_data/v1/di/postinvoicedata"
    sandbox_validate_path: str = "/di_data/v1/di/validateinvoicedata_sb"
    production_validate_path: str = "/di_data/v1/di/validateinvoicedata"
    timeout_seconds: float = 30.0
    user_agent: str = "einvoice-core/0.1"


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0
    sequence_attempts: int = 3
    sequence_delay_seconds: float = 0.05
    scheduled_max_retries: int = 3
    scheduled_initial_delay_seconds: float = 5.0
    scheduled_max_delay_seconds: float = 300.0


@dataclass(frozen=True)
class WorkerSettings:
    pool_size: int = 8
    requests_per_second: float | None = None
    lease_seconds: int = 300
    claim_seconds: int = 600

    def __post_init__(self) -> None:
        clamped = min(max(int(self.pool_size), MIN_POOL_SIZE), MAX_POOL_SIZE)
        object.__setattr__(self, "pool_size", clamped)


@dataclass(frozen=True)
class IngestionSettings:
    commit_every: int = 1
    max_rows: int | None = None


@dataclass(frozen=True)
class Settings:
    """All settings sections."""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    fbr: FbrSettings = field(default_factory=FbrSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    workers: WorkerSettings = field(default_factory=WorkerSettings)
    ingestion: IngestionSettings = field(default_factory=IngestionSettings)
