"""Engine internals: the serial task queue and the transaction/retry protocol."""

from .queue import SerialTaskQueue
from .transaction import DEFAULT_BUSY_WAIT, Transaction, TransactionRunner, TransactionState

__all__ = [
    "SerialTaskQueue",
    "Transaction",
    "TransactionRunner",
    "TransactionState",
    "DEFAULT_BUSY_WAIT",
]
