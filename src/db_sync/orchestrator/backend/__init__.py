"""Transfer backend implementations."""

from db_sync.orchestrator.backend.base import (
    BackendError,
    StageRequest,
    StageResult,
    TransferBackend,
)
from db_sync.orchestrator.backend.cli_backend import MySqlCliBackend

__all__ = [
    "BackendError",
    "MySqlCliBackend",
    "StageRequest",
    "StageResult",
    "TransferBackend",
]
