from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy import and_, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.metrics import observe_write_conflict
from app.workpackages.errors import ConflictError
from app.workpackages.models import WorkPackage, utcnow


logger = logging.getLogger("app.workpackages.concurrency")

T = TypeVar("T")


class StaleWorkPackageError(Exception):
    """A concurrent writer bumped the work package row_version first."""

    def __init__(self, work_package_id: uuid.UUID, seen_version: int) -> None:
        super().__init__(f"work package {work_package_id} changed since version {seen_version}")
        self.work_package_id = work_package_id
        self.seen_version = seen_version


def claim_write(session: Session, work_package: WorkPackage) -> None:
    """Bump row_version guarded by the version read earlier in this transaction.

    Writers for one work package are serialized by this compare-and-set: only
    one of two interleaved transactions can match the version both read.
    """
    seen_version = work_package.row_version
    result = session.execute(
        update(WorkPackage)
        .where(and_(WorkPackage.id == work_package.id, WorkPackage.row_version == seen_version))
        .values(row_version=WorkPackage.row_version + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise StaleWorkPackageError(work_package.id, seen_version)
    session.expire(work_package, ["row_version", "updated_at"])


def run_serialized(
    session: Session,
    operation: Callable[[], T],
    *,
    attempts: int | None = None,
) -> T:
    """Run ``operation`` and commit once; retry the whole unit when a concurrent writer wins.

    Any other exception rolls the transaction back and propagates, so a failed
    batch leaves nothing behind.
    """
    max_attempts = max(1, attempts if attempts is not None else get_settings().workpackage_write_retry_attempts)
    for attempt in range(1, max_attempts + 1):
        try:
            result = operation()
            session.commit()
            return result
        except StaleWorkPackageError as exc:
            session.rollback()
            observe_write_conflict()
            logger.warning(
                "workpackage.write_conflict",
                extra={
                    "work_package_id": str(exc.work_package_id),
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                },
            )
            if attempt == max_attempts:
                raise ConflictError(
                    "work package was modified concurrently",
                    details={"work_package_id": str(exc.work_package_id), "attempts": attempt},
                ) from exc
        except Exception:
            session.rollback()
            raise
    raise AssertionError("unreachable")
