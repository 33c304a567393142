from __future__ import annotations

import logging
from typing import Optional

from django.db import DatabaseError

from survey_engine.celery import celery_app
from .lifecycle import expire_overdue_surveys

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    autoretry_for=(DatabaseError,),
    retry_backoff=10,
    retry_jitter=True,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def expire_overdue_surveys_task(self, batch_size: Optional[int] = None) -> int:
    """
    Periodic sweep (celery beat) that materializes `expired` for active
    surveys past their end date. Safe to run concurrently: each batch
    re-checks the overdue filter inside its UPDATE.
    """
    total = expire_overdue_surveys(batch_size=batch_size)
    logger.info("Expiry sweep finished", extra={"count": total})
    return total
