"""
Network Layer.

This package performs file transfers over HTTP and reports their progress and
outcome to the download orchestrator.
"""

from .transfer import (
    AiohttpTransfer,
    AiohttpTransferFactory,
    Transfer,
    TransferCallbacks,
)

__all__ = ["AiohttpTransfer", "AiohttpTransferFactory", "Transfer", "TransferCallbacks"]
