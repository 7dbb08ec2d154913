"""
Linnworks Order Sync - Production Grade

Pulls open and processed orders from the Linnworks API into a local
SQL store under the vendor's rate limits, without losing or duplicating
orders across retries, timeouts and partial failures.

Features:
- Shared session tokens and a shared fixed-window rate limit
- Classified retries with Retry-After support
- Paginated fetch with a hard item cap
- Idempotent chunked import (dirty-checked upserts)
- Failed-order capture with scheduled retry and escalation
- Progress telemetry and post-sync cache warming

Quick Start:
    pip install linnworks-sync
    lw-sync setup    # Interactive configuration
    lw-sync test     # Verify credentials
    lw-sync sync     # Run one sync
"""

from linnworks_sync.sync import OrderSyncRunner, SyncResult
from linnworks_sync.client import ApiClient
from linnworks_sync.exceptions import (
    LinnworksSyncError,
    AuthError,
    AuthFailure,
    ApiError,
    RateLimitError,
    ServerError,
    SessionExpiredError,
    OrderImportError,
)
from linnworks_sync.models import (
    DateRange,
    SessionToken,
    VendorOrder,
    VendorOrderItem,
)
from linnworks_sync.config import SyncSettings, load_config
from linnworks_sync.session import SessionManager
from linnworks_sync.rate_limiter import RateLimiter
from linnworks_sync.retry import RetryExecutor
from linnworks_sync.pagination import PaginatedFetchOrchestrator
from linnworks_sync.importer import OrderImportEngine, ImportSummary
from linnworks_sync.recovery import FailedSyncRecovery
from linnworks_sync.telemetry import ProgressTelemetry
from linnworks_sync.warming import CacheWarmingOrchestrator
from linnworks_sync.state import StateManager, SyncCheckpoint
from linnworks_sync.cache import BoundedLRUCache

__version__ = "1.0.0"
__all__ = [
    # Runner
    "OrderSyncRunner",
    "SyncResult",

    # API client
    "ApiClient",
    "LinnworksSyncError",
    "AuthError",
    "AuthFailure",
    "ApiError",
    "RateLimitError",
    "ServerError",
    "SessionExpiredError",
    "OrderImportError",

    # Models
    "DateRange",
    "SessionToken",
    "VendorOrder",
    "VendorOrderItem",

    # Configuration
    "SyncSettings",
    "load_config",

    # Pipeline components
    "SessionManager",
    "RateLimiter",
    "RetryExecutor",
    "PaginatedFetchOrchestrator",
    "OrderImportEngine",
    "ImportSummary",
    "FailedSyncRecovery",
    "ProgressTelemetry",
    "CacheWarmingOrchestrator",

    # State management
    "StateManager",
    "SyncCheckpoint",

    # Cache
    "BoundedLRUCache",
]
