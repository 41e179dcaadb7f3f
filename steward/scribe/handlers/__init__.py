"""
Chat Handlers

Each handler converts platform-specific webhook payloads into the common
ChatEvent / ControlEvent shapes, and each notifier implements outbound
delivery for the same platform.

Available Handlers:
- SlackHandler / SlackNotifier: Slack Events API, interactivity and Web API
"""

from .base import (
    ActionButton,
    BaseHandler,
    ChatEvent,
    ChatEventType,
    ControlEvent,
    EditForm,
    FormField,
    Notification,
    Notifier,
)
from .slack import SlackHandler, SlackNotifier, format_for_slack

__all__ = [
    "ActionButton",
    "BaseHandler",
    "ChatEvent",
    "ChatEventType",
    "ControlEvent",
    "EditForm",
    "FormField",
    "Notification",
    "Notifier",
    "SlackHandler",
    "SlackNotifier",
    "format_for_slack",
]
