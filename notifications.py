"""Signals sent after the transaction that caused them has committed."""

import logging

from blinker import Namespace

logger = logging.getLogger(__name__)

_signals = Namespace()

#: kwargs: request_id, user_id, library_id, title_id, status, record_id
request_decided = _signals.signal('request-decided')
#: kwargs: record_id, user_id, library_id, copy_id
loan_returned = _signals.signal('loan-returned')
#: kwargs: record_id, user_id, library_id, copy_id
loan_lost = _signals.signal('loan-lost')
#: kwargs: record_id, user_id, library_id, due_date
loan_overdue = _signals.signal('loan-overdue')

ALL_SIGNALS = (request_decided, loan_returned, loan_lost, loan_overdue)


def log_notification(sender, **identifiers):
    logger.info(f"Notification from {sender}: {identifiers}")


def _make_receiver(event_type):
    def receiver(sender, **identifiers):
        log_notification(sender, type=event_type, **identifiers)
    return receiver


_logging_receivers = {signal.name: _make_receiver(signal.name) for signal in ALL_SIGNALS}


def connect_logging_receiver():
    # connecting the same receiver twice is a no-op in blinker
    for signal in ALL_SIGNALS:
        signal.connect(_logging_receivers[signal.name])
