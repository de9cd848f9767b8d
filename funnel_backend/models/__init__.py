from __future__ import annotations

"""
Models package for the funnel backend.

Imports and exposes ORM models so they are registered with Base.metadata.
"""

import logging

from funnel_backend.db import Base
from .bridge import BridgeAssociation  # noqa: F401
from .funnel_progress import FunnelProgress, FunnelStage  # noqa: F401
from .lead import (  # noqa: F401
    LEAD_STATUS_TRANSITIONS,
    Lead,
    LeadEmail,
    LeadMergeEvent,
    LeadStatus,
    LeadStatusHistory,
    LeadVisitorId,
)
from .touchpoint import Touchpoint, Visitor  # noqa: F401

logger = logging.getLogger("funnel.models")

__all__ = [
    "Base",
    "LEAD_STATUS_TRANSITIONS",
    "BridgeAssociation",
    "FunnelProgress",
    "FunnelStage",
    "Lead",
    "LeadEmail",
    "LeadMergeEvent",
    "LeadStatus",
    "LeadStatusHistory",
    "LeadVisitorId",
    "Touchpoint",
    "Visitor",
]
