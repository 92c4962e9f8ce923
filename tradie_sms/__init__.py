"""
🚐 Tradie SMS Engine
--------------------
Client SMS backbone for a trades-business platform: conversations,
outbound dispatch, multi-tenant inbound routing, quick actions and
time-based automation rules driven by a periodic scheduler.
"""

from .config import settings

__all__ = ["settings"]
