"""
Inbox Pattern Implementation

Consumer-side deduplication for messages delivered at-least-once.

Usage:
    from outbox_relay.core.inbox import InboxGuard

    async with InboxGuard(db, message_id, consumer_id="my-consumer") as guard:
        if guard.should_process:
            await do_something(event)
"""

from .guard import InboxGuard, is_processed, mark_processed, remove_processed

__all__ = [
    "InboxGuard",
    "is_processed",
    "mark_processed",
    "remove_processed",
]
