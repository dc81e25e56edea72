from __future__ import annotations

import logging
import threading
from typing import Any, Protocol

from tenderflow.repositories.notifications import NotificationsRepository

logger = logging.getLogger(__name__)

NEW_BID = "new_bid"
BID_EVALUATED = "bid_evaluated"
BID_AWARDED = "bid_awarded"
BID_NOT_SELECTED = "bid_not_selected"
BID_WITHDRAWN = "bid_withdrawn"

_TEMPLATES: dict[str, tuple[str, str]] = {
    NEW_BID: ("New Bid Received", 'A new bid has been submitted for your tender "{tender_title}"'),
    BID_EVALUATED: ("Bid Evaluated", 'Your bid for "{tender_title}" has been evaluated'),
    BID_AWARDED: ("Congratulations! Your bid was selected", 'Your bid for "{tender_title}" has been awarded!'),
    BID_NOT_SELECTED: ("Tender Award Notification", 'The tender "{tender_title}" has been awarded to another bidder'),
    BID_WITHDRAWN: ("Bid Withdrawn", 'A bid for your tender "{tender_title}" has been withdrawn'),
}


def render_notification(type: str, payload: dict[str, Any]) -> tuple[str, str]:
    title, template = _TEMPLATES.get(type, ("Notification", "{tender_title}"))
    return title, template.format(tender_title=payload.get("tender_title") or "")


class Notifier(Protocol):
    def notify(self, user_id: int, type: str, payload: dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Keeps dispatched notifications in memory and logs them; used when no store is configured."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent: list[dict[str, Any]] = []

    def notify(self, user_id: int, type: str, payload: dict[str, Any]) -> None:
        title, message = render_notification(type, payload)
        with self._lock:
            self.sent.append({"user_id": user_id, "type": type, "title": title, "message": message, "data": dict(payload)})
        logger.info("notification user_id=%s type=%s title=%s", user_id, type, title)


class DatabaseNotifier:
    def __init__(self, repository: NotificationsRepository) -> None:
        self._repository = repository

    def notify(self, user_id: int, type: str, payload: dict[str, Any]) -> None:
        title, message = render_notification(type, payload)
        self._repository.create(user_id=user_id, type=type, title=title, message=message, data=payload)


def dispatch_safely(notifier: Notifier | None, user_id: int, type: str, payload: dict[str, Any]) -> bool:
    """Deliver one notification; failures are logged and never reach the caller."""
    if notifier is None:
        return False
    try:
        notifier.notify(user_id, type, payload)
    except Exception as exc:
        logger.warning("notification dispatch failed user_id=%s type=%s error=%s", user_id, type, exc)
        return False
    return True
