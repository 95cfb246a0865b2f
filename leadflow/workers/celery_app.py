"""
Celery application for Leadflow

Two queues:
- automation_events:   handle_event_task, run_workflow_test_task
- automation_schedule: sweep_suspended_runs_task, fed by beat

Keeping the sweep on its own queue means a burst of lead events never delays
resumption of suspended runs.

Environment:
    REDIS_URL               broker and result backend (required)
    SWEEP_INTERVAL_SECONDS  beat period, and the time-trigger window of the first sweep (default 60)
    WORKER_CONCURRENCY      prefork processes per worker (default 2)
    TASK_TIME_LIMIT         hard limit per task in seconds (default 300)
"""

import os
import logging

from celery import Celery
from kombu import Exchange, Queue

from ..core.logging_config import setup_logging

# Workers log JSON unless told otherwise
setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "true").lower() == "true",
    log_file=os.getenv("LOG_FILE", None)
)

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL")
if not REDIS_URL:
    raise ValueError(
        "REDIS_URL environment variable not set. "
        "Required for Celery message broker and result backend."
    )

SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
TASK_TIME_LIMIT = int(os.getenv("TASK_TIME_LIMIT", "300"))

EVENTS_QUEUE = "automation_events"
SCHEDULE_QUEUE = "automation_schedule"

_exchange = Exchange("automation", type="direct")

celery_app = Celery("leadflow")

celery_app.conf.update(
    broker_url=REDIS_URL,
    result_backend=REDIS_URL,
    broker_connection_retry_on_startup=True,

    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,

    # Redelivered if a worker dies mid-task; run claims keep resumption single
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=TASK_TIME_LIMIT,
    task_soft_time_limit=max(TASK_TIME_LIMIT - 30, 1),

    # Test-run traces are polled by the editor through GET /tasks/{id}
    result_expires=3600,

    task_default_queue=EVENTS_QUEUE,
    task_queues=(
        Queue(EVENTS_QUEUE, _exchange, routing_key="automation.event"),
        Queue(SCHEDULE_QUEUE, _exchange, routing_key="automation.sweep"),
    ),
    task_routes={
        "handle_event_task": {"queue": EVENTS_QUEUE, "routing_key": "automation.event"},
        "run_workflow_test_task": {"queue": EVENTS_QUEUE, "routing_key": "automation.event"},
        "sweep_suspended_runs_task": {"queue": SCHEDULE_QUEUE, "routing_key": "automation.sweep"},
    },

    worker_concurrency=int(os.getenv("WORKER_CONCURRENCY", "2")),
    worker_max_tasks_per_child=1000,
    worker_hijack_root_logger=False,
)

celery_app.conf.beat_schedule = {
    "sweep-suspended-runs": {
        "task": "sweep_suspended_runs_task",
        "schedule": float(SWEEP_INTERVAL_SECONDS),
        # A stale tick adds nothing: the next one sweeps from the stored cursor
        "options": {"expires": SWEEP_INTERVAL_SECONDS},
    },
}

logger.info(
    f"Celery configured: queues={EVENTS_QUEUE},{SCHEDULE_QUEUE}, "
    f"sweep every {SWEEP_INTERVAL_SECONDS}s"
)

# Registers the tasks with the app; must follow the configuration above
from . import tasks  # noqa: F401, E402
