"""In-process per-account mutual exclusion.

The database row lock on `account_balances` serializes writers across
processes; this striped lock does the same for threads inside one process so
they queue instead of contending on the row. Two accounts may share a stripe,
which only costs throughput.
"""

import threading
import zlib
from contextlib import contextmanager


class AccountLocks:
    """Fixed pool of locks addressed by a stable hash of the account id."""

    def __init__(self, stripes: int = 256) -> None:
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _lock_for(self, account_id: str) -> threading.Lock:
        return self._locks[zlib.crc32(account_id.encode("utf-8")) % len(self._locks)]

    @contextmanager
    def hold(self, account_id: str):
        with self._lock_for(account_id):
            yield
