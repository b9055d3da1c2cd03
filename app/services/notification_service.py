from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from sqlalchemy import event
from sqlalchemy.orm import Session

from app.config import settings

logger = logging.getLogger(__name__)

PENDING_KEY = 'pending_notifications'

EVENT_STARTED = 'started'
EVENT_PAUSED = 'paused'
EVENT_FINISHED = 'finished'
EVENT_HELP_REQUESTED = 'help_requested'


@dataclass(frozen=True)
class NotificationEvent:
    order_id: int
    location_id: int | None
    event_type: str


class NotificationSink(Protocol):
    def notify(self, event: NotificationEvent) -> None: ...


class LoggingNotificationSink:
    def notify(self, event: NotificationEvent) -> None:
        logger.info(
            'Notification %s order=%s location=%s', event.event_type, event.order_id, event.location_id
        )


class NullNotificationSink:
    def notify(self, event: NotificationEvent) -> None:
        return None


class WebhookNotificationSink:
    def __init__(self) -> None:
        if not settings.notification_webhook_url:
            raise ValueError('NOTIFICATION_WEBHOOK_URL is required when NOTIFICATION_SINK=webhook')
        self.url = settings.notification_webhook_url

    def notify(self, event: NotificationEvent) -> None:
        req = Request(
            url=self.url,
            data=json.dumps(asdict(event)).encode('utf-8'),
            headers={'Content-Type': 'application/json'},
            method='POST',
        )
        try:
            with urlopen(req, timeout=settings.notification_timeout_seconds) as response:
                response.read()
        except HTTPError as exc:
            raise ValueError(f'Notification webhook error {exc.code}') from exc
        except URLError as exc:
            raise ValueError(f'Notification webhook network error: {exc.reason}') from exc


@lru_cache(maxsize=1)
def get_notification_sink() -> NotificationSink:
    sink = settings.notification_sink.strip().lower()
    if sink == 'webhook':
        return WebhookNotificationSink()
    if sink == 'none':
        return NullNotificationSink()
    return LoggingNotificationSink()


def queue_notification(db: Session, *, order_id: int, location_id: int | None, event_type: str) -> None:
    """Buffer an event on the session; it is delivered only if the transaction commits."""
    db.info.setdefault(PENDING_KEY, []).append(
        NotificationEvent(order_id=order_id, location_id=location_id, event_type=event_type)
    )


_executor = ThreadPoolExecutor(
    max_workers=settings.notification_max_workers,
    thread_name_prefix='notifications',
)
_in_flight: set[Future] = set()
_in_flight_lock = threading.Lock()


def deliver(events: list[NotificationEvent], sink: NotificationSink | None = None) -> int:
    sink = sink or get_notification_sink()
    delivered = 0
    for pending in events:
        try:
            sink.notify(pending)
            delivered += 1
        except Exception:
            logger.warning(
                'Notification %s for order=%s dropped', pending.event_type, pending.order_id, exc_info=True
            )
    return delivered


def _forget(future: Future) -> None:
    with _in_flight_lock:
        _in_flight.discard(future)


def dispatch_pending(db: Session, sink: NotificationSink | None = None) -> Future | None:
    """Hand the session's buffered events to the delivery pool without waiting on the sink."""
    events = db.info.pop(PENDING_KEY, [])
    if not events:
        return None
    future = _executor.submit(deliver, events, sink or get_notification_sink())
    with _in_flight_lock:
        _in_flight.add(future)
    future.add_done_callback(_forget)
    return future


def wait_for_delivery(timeout: float | None = None) -> bool:
    """Block until every dispatched batch has been handed to its sink."""
    with _in_flight_lock:
        pending = list(_in_flight)
    if not pending:
        return True
    _, not_done = wait(pending, timeout=timeout)
    return not not_done


def _after_commit(session: Session) -> None:
    # Savepoint commits fire this event too; only the outermost commit delivers.
    if session.in_nested_transaction():
        return
    dispatch_pending(session)


def _after_transaction_end(session: Session, transaction) -> None:
    if transaction.nested or transaction.parent is not None:
        return
    session.info.pop(PENDING_KEY, None)


def install_notification_dispatch(session_factory) -> None:
    event.listen(session_factory, 'after_commit', _after_commit)
    event.listen(session_factory, 'after_transaction_end', _after_transaction_end)
