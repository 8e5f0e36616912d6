from vpnpool.common import settings
from vpnpool.common.celery_app import (
    app,
    CLEANUP_ADDRESS_ALLOCATIONS,
    CLEANUP_EXPIRED_EVENTS,
    REAP_IDLE_SESSIONS,
)


app.conf.beat_schedule = {
    "reap-idle-sessions": {
        "task": REAP_IDLE_SESSIONS,
        "schedule": settings.IDLE_SWEEP_INTERVAL,
    },
    "cleanup-expired-events": {
        "task": CLEANUP_EXPIRED_EVENTS,
        "schedule": settings.EVENT_CLEANUP_INTERVAL,
    },
    "cleanup-address-allocations": {
        "task": CLEANUP_ADDRESS_ALLOCATIONS,
        "schedule": settings.EVENT_CLEANUP_INTERVAL,
    },
}
