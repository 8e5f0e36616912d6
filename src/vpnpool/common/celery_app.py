from celery import Celery
from kombu.utils.url import safequote

from vpnpool.common import settings

REAPER_ROOT = "vpnpool.workers.tasks.reaper"
MAINTENANCE_ROOT = "vpnpool.workers.tasks.maintenance"

REAP_IDLE_SESSIONS = f"{REAPER_ROOT}.reap_idle_sessions"
CLEANUP_EXPIRED_EVENTS = f"{MAINTENANCE_ROOT}.cleanup_expired_events"
CLEANUP_ADDRESS_ALLOCATIONS = f"{MAINTENANCE_ROOT}.cleanup_address_allocations"


def get_broker_url() -> str:
    protocol = settings.CELERY_BROKER_TYPE
    user = safequote(settings.CELERY_BROKER_USER)
    password = safequote(settings.CELERY_BROKER_PASSWORD or "")
    host = settings.CELERY_BROKER_HOST

    if password:
        url = f"{protocol}://{user}:{password}@{host}"
    else:
        url = f"{protocol}://{host}"

    if protocol == "redis":
        url += f"/{settings.REDIS_DB}"
    return url


app = Celery(
    "vpnpool",
    broker=get_broker_url(),
    backend=settings.CELERY_RESULT_BACKEND,
)

app.autodiscover_tasks(["vpnpool.workers.tasks"])


app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # Worst case sweep: every unit hits the deprovision ceiling
    task_time_limit=settings.DEPROVISION_TIMEOUT * settings.MAX_COMPUTE_UNITS + 60,
    task_routes={
        f"{REAPER_ROOT}.*": {"queue": f"{settings.CELERY_QUEUE_PREFIX}-reaper"},
        f"{MAINTENANCE_ROOT}.*": {
            "queue": f"{settings.CELERY_QUEUE_PREFIX}-maintenance"
        },
    },
)
