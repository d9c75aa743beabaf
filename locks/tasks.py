import logging

from celery import shared_task

from .backends import DatabaseLeaseBackend

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3, default_retry_delay=5)
def purge_expired_leases(self):
    # Expired rows never block acquisition; this only keeps the table small.
    deleted = DatabaseLeaseBackend.purge_expired()
    if deleted:
        logger.info("Purged %s expired lock leases", deleted)
    return deleted
