"""
Read-through query cache
Entries are keyed by tuples whose first element is the query name, e.g.
('overdue-transactions', church_id). Callers may only read through the cache
or invalidate by name; nothing writes entries directly.
"""

import threading
import logging

logger = logging.getLogger(__name__)

# Query names
TRANSACTIONS = 'transactions'
TRANSACTION_STATS = 'transaction-stats'
OVERDUE_TRANSACTIONS = 'overdue-transactions'
TODAYS_DUE_TRANSACTIONS = 'todays-due-transactions'
DUE_TRANSACTION_ALERTS = 'due-transaction-alerts'
INSTALLMENT_STATS = 'installment-stats'
FILTERED_TRANSACTIONS = 'filtered-transactions'

# Every query derived from transaction data
TRANSACTION_QUERY_KEYS = (
    TRANSACTIONS,
    TRANSACTION_STATS,
    OVERDUE_TRANSACTIONS,
    TODAYS_DUE_TRANSACTIONS,
    DUE_TRANSACTION_ALERTS,
    INSTALLMENT_STATS,
    FILTERED_TRANSACTIONS,
)


class QueryCache:
    """Key-value store of query results with name-based invalidation"""

    def __init__(self):
        self._entries = {}
        self._generations = {}
        self._lock = threading.RLock()

    def fetch(self, key, loader):
        """Return the cached value for key, loading it on a miss.

        Loader exceptions propagate and nothing is stored. A result whose
        query name was invalidated while loading is returned but not kept.
        """
        key = tuple(key)
        with self._lock:
            if key in self._entries:
                return self._entries[key]
            generation = self._generations.get(key[0], 0)
        value = loader()
        with self._lock:
            if self._generations.get(key[0], 0) == generation:
                self._entries[key] = value
        return value

    def peek(self, key):
        """Return the cached value or None without loading"""
        with self._lock:
            return self._entries.get(tuple(key))

    def __contains__(self, key):
        with self._lock:
            return tuple(key) in self._entries

    def invalidate(self, names):
        """Drop every entry whose query name is in names"""
        names = frozenset(names)
        with self._lock:
            for name in names:
                self._generations[name] = self._generations.get(name, 0) + 1
            stale = [key for key in self._entries if key[0] in names]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)


def invalidate_all_transaction_queries(cache):
    """Invalidate every cached query derived from transaction data"""
    dropped = cache.invalidate(TRANSACTION_QUERY_KEYS)
    logger.debug(f"Invalidated {dropped} cached transaction queries")
    return dropped
