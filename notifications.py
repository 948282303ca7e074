"""
Transient (toast) notifications
Messages raised outside of a request (realtime events, background work) are
queued per client session and flashed on that session's next request.
"""

from collections import deque
from flask import flash
import threading
import logging

logger = logging.getLogger(__name__)

# Messages shown by the realtime bridge
NEW_TRANSACTION_MESSAGE = 'Nova transação adicionada'
REMOVED_TRANSACTION_MESSAGE = 'Transação removida'


class ToastQueue:
    """Pending notifications for one client session"""

    def __init__(self, maxlen=50):
        self._messages = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def push(self, message, category='info'):
        with self._lock:
            self._messages.append((message, category))

    def info(self, message):
        self.push(message, 'info')

    def error(self, message):
        self.push(message, 'error')

    def drain(self):
        """Remove and return every pending (message, category) pair"""
        with self._lock:
            messages = list(self._messages)
            self._messages.clear()
        return messages

    def __len__(self):
        with self._lock:
            return len(self._messages)


def flash_pending(queue):
    """Move queued notifications into Flask's flash storage"""
    messages = queue.drain()
    for message, category in messages:
        flash(message, category)
    if messages:
        logger.debug(f"Flashed {len(messages)} pending notification(s)")
    return len(messages)
