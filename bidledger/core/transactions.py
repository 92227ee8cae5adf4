"""
Runs a unit-of-work body and converts its outcome into an OperationResult.

Bodies raise MarketError subclasses to roll back; contention surfaces as a
ConcurrencyError from the unit of work itself or as a classified sqlite
OperationalError. Anything else from the store is UNEXPECTED.
"""

import logging
import sqlite3
from typing import Callable, ContextManager

from bidledger.core.errors import ErrorKind, MarketError, OperationResult, classify_operational_error


def run_locked(
    unit: Callable[[], ContextManager[sqlite3.Connection]],
    body: Callable[[sqlite3.Connection], OperationResult],
    logger: logging.Logger,
    label: str,
) -> OperationResult:
    """
    One attempt of body inside a fresh unit of work.

    Args:
        unit: Factory for the unit of work (e.g. lambda: storage.lock_order(id))
        body: Work to do with the unit's connection
        logger: Logger for unexpected store errors
        label: What is locked, for log lines
    """
    try:
        with unit() as conn:
            return body(conn)
    except MarketError as e:
        return OperationResult.from_error(e)
    except sqlite3.OperationalError as e:
        classified = classify_operational_error(e)
        if classified is not None:
            return OperationResult.from_error(classified)
        logger.exception(f"Unexpected store error for {label}")
        return OperationResult.fail(ErrorKind.UNEXPECTED, str(e))
    except sqlite3.Error as e:
        logger.exception(f"Unexpected store error for {label}")
        return OperationResult.fail(ErrorKind.UNEXPECTED, str(e))
