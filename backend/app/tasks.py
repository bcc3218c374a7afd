import os
from uuid import UUID

from celery import Celery
from celery.utils.log import get_task_logger

from .database import session_scope
from . import models, notify

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
celery_app = Celery("psa", broker=CELERY_BROKER_URL)
celery_app.conf.task_always_eager = (
    CELERY_BROKER_URL == "memory://" or os.getenv("TESTING") == "1"
)

# purpose: deliver workflow assignment emails outside the request lifecycle
# inputs: user ids and node labels committed by the workflow routes
# outputs: emails through notify.send_email
# status: active

_logger = get_task_logger(__name__)


@celery_app.task
def notify_step_assignee(user_id: str, node_label: str, project_name: str | None = None):
    with session_scope() as db:
        user = db.get(models.User, UUID(user_id))
        if user is None or not user.email:
            _logger.warning("Skipping assignment email: user %s not found", user_id)
            return False
        subject, body = notify.assignment_email(node_label, project_name)
        sent = notify.send_email(user.email, subject, body)
    if sent:
        _logger.info("Assignment email for %s sent to user %s", node_label, user_id)
    return sent


def enqueue_step_notifications(
    assigned: list[tuple[UUID, str]], project_name: str | None = None
) -> None:
    """Queue one email per (user_id, node_label) assigned during a committed handoff."""
    for user_id, node_label in assigned:
        if celery_app.conf.task_always_eager:
            notify_step_assignee(str(user_id), node_label, project_name)
        else:
            notify_step_assignee.delay(str(user_id), node_label, project_name)
