"""
Analytics module for search usage tracking.
"""

from .storage import AnalyticsStorage
from .tracker import (
    FeedbackType,
    SearchAnalyticsEvent,
    SearchFeedback,
    SearchMetrics,
    SearchTracker,
)

__all__ = [
    "AnalyticsStorage",
    "FeedbackType",
    "SearchAnalyticsEvent",
    "SearchFeedback",
    "SearchMetrics",
    "SearchTracker",
]
