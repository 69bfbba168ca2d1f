"""Glucose feed clients.

    official - OAuth2 regulated feed, published after a multi-hour delay
    informal - session-based near-real-time feed
    hybrid   - routes windows between the two and merges overlaps
"""

from glucosync.sources.hybrid import HybridSource
from glucosync.sources.informal import InformalSourceClient
from glucosync.sources.official import OfficialSourceClient

__all__ = ["HybridSource", "InformalSourceClient", "OfficialSourceClient"]
