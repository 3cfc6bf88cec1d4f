import logging
from collections.abc import Callable

from celery import Celery
from sqlalchemy.orm import Session

from leadscope.context import correlation_scope
from leadscope.core.config import get_settings
from leadscope.core.database import SessionLocal
from leadscope.logging import configure_logging
from leadscope.otel import setup_otel
from leadscope.security.cascade import BranchCascadeRunner

settings = get_settings()

configure_logging()
setup_otel(settings.app_name, settings.otel_enabled)

logger = logging.getLogger("leadscope.tasks")

celery_app = Celery("leadscope", broker=settings.redis_url, backend=settings.redis_url)


def resume_branch_cascades(
    session_factory: Callable[[], Session] = SessionLocal,
    correlation_id: str | None = None,
) -> list[str]:
    """Finish every pending branch cascade; safe to run repeatedly."""

    with correlation_scope(correlation_id):
        session = session_factory()
        try:
            resumed = BranchCascadeRunner().resume_pending(session)
        finally:
            session.close()
        if resumed:
            logger.info("cascade.resumed", extra={"status": "resumed", "cascade_id": resumed})
        return resumed


@celery_app.task(name="leadscope.tasks.resume_branch_cascades")
def resume_branch_cascades_task(correlation_id: str | None = None) -> list[str]:
    return resume_branch_cascades(correlation_id=correlation_id)
