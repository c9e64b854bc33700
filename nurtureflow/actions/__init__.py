"""Action executors: the side effects action steps request."""

from .base import (
    ActionExecutor,
    ActionHandler,
    ActionRegistry,
    ContactAttributeProvider,
    MetadataPatch,
    StaticAttributeProvider,
)
from .builtin import (
    AddScoreHandler,
    UpdateFieldHandler,
    WebhookHandler,
    WorkflowMembershipHandler,
)

__all__ = [
    "ActionExecutor",
    "ActionHandler",
    "ActionRegistry",
    "ContactAttributeProvider",
    "MetadataPatch",
    "StaticAttributeProvider",
    "AddScoreHandler",
    "UpdateFieldHandler",
    "WebhookHandler",
    "WorkflowMembershipHandler",
]
