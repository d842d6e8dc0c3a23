"""Transaction boundary shared by the service layer."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from halonet.exceptions import ConcurrencyError

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """Commit on success, roll back on any error.

    Lost updates detected by a ``version_id_col`` surface as
    ``ConcurrencyError``.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        logger.info("Optimistic lock conflict: %s", exc)
        raise ConcurrencyError(
            "Record was modified by another transaction; reload and retry"
        ) from exc
    except Exception:
        db.rollback()
        raise
