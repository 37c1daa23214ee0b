"""
Notification Service — post-commit fan-out to external collaborators.

Email delivery, AI summaries and file storage sit outside the core.  They
subscribe here and are called only after a workflow transition or
lifecycle action has committed.  Delivery is fire-and-forget: a listener
that raises is logged and skipped, never surfaced to the caller.

Usage:
    from tracker.services.notification import NotificationService

    NotificationService.subscribe(my_listener)      # my_listener(event_type, payload)
    NotificationService.dispatch("workflow.transition", {...})
"""

import logging

logger = logging.getLogger(__name__)

_listeners = []


class NotificationService:
    """Stateless service class for post-commit event fan-out."""

    @staticmethod
    def subscribe(listener):
        if listener not in _listeners:
            _listeners.append(listener)
        return listener

    @staticmethod
    def unsubscribe(listener):
        if listener in _listeners:
            _listeners.remove(listener)

    @staticmethod
    def clear():
        _listeners.clear()

    @staticmethod
    def dispatch(event_type, payload):
        """Call every listener; returns how many succeeded."""
        delivered = 0
        for listener in list(_listeners):
            try:
                listener(event_type, payload)
                delivered += 1
            except Exception:
                logger.exception(
                    "Notification listener failed",
                    extra={"event_type": event_type},
                )
        return delivered

    # ── Convenience events ────────────────────────────────────────────────

    @staticmethod
    def notify_transition(result, *, project_id, actor_user_id):
        return NotificationService.dispatch(
            "workflow.transition",
            {**result.to_dict(), "project_id": project_id, "actor_user_id": actor_user_id},
        )

    @staticmethod
    def notify_lifecycle(action, *, entity_type, record_id, project_id, actor_user_id):
        return NotificationService.dispatch(
            f"lifecycle.{action}",
            {
                "entity_type": entity_type,
                "record_id": record_id,
                "project_id": project_id,
                "actor_user_id": actor_user_id,
            },
        )
