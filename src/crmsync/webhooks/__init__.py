"""Webhook handling and heuristic merge detection."""

from .entity_links import EntityLink, InMemoryEntityLinkStore
from .handler import WebhookHandler, WebhookOutcome
from .merge_detector import MergeDetector

__all__ = [
    "EntityLink",
    "InMemoryEntityLinkStore",
    "MergeDetector",
    "WebhookHandler",
    "WebhookOutcome",
]
