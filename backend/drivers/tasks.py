"""Celery tasks for driver session housekeeping."""

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task
def expire_stale_driver_sessions_task():
    """Take offline idle drivers that stopped reporting their position."""
    from drivers.services import expire_stale_sessions

    expired = expire_stale_sessions()
    return len(expired)
