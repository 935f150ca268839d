from __future__ import annotations

import logging
import os
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from tool_custody.services.errors import CustodyError, StaleVersionError


T = TypeVar("T")

LOGGER = logging.getLogger("tool_custody.transactions")


def _max_conflict_retries() -> int:
    raw = os.environ.get("TOOL_CUSTODY_MAX_CONFLICT_RETRIES") or "3"
    try:
        return max(1, int(raw))
    except ValueError:
        return 3


def run_optimistic(
    db: Session,
    unit: Callable[[], T],
    *,
    label: str,
    on_integrity_error: Callable[[IntegrityError], CustodyError] | None = None,
) -> T:
    """Run ``unit`` and commit it as one transaction.

    A version conflict on any versioned row rolls the whole unit back and runs
    it again from a fresh read, so availability is re-checked rather than the
    stale write being replayed. Domain errors roll back and propagate.
    """
    attempts = _max_conflict_retries()
    for attempt in range(1, attempts + 1):
        try:
            result = unit()
            db.commit()
            return result
        except StaleDataError:
            db.rollback()
            LOGGER.info("%s: version conflict on attempt %s/%s, re-reading", label, attempt, attempts)
        except IntegrityError as exc:
            db.rollback()
            if on_integrity_error is None:
                raise
            raise on_integrity_error(exc) from exc
        except Exception:
            db.rollback()
            raise
    LOGGER.warning("%s: giving up after %s version conflicts", label, attempts)
    raise StaleVersionError(f"{label} kept conflicting with concurrent updates; retry later.")
