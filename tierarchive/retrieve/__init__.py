"""
Tier-transparent reads for TierArchive.
"""

from .gateway import RetrievalGateway

__all__ = ["RetrievalGateway"]
