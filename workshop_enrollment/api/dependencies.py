"""FastAPI dependencies resolving the process-wide application graph."""
from functools import lru_cache

from fastapi import Depends

from workshop_enrollment.bootstrap import Application, build_application
from workshop_enrollment.core import EnrollmentCore
from workshop_enrollment.integrations import WebhookHandler
from workshop_enrollment.monitoring.health import HealthCheck


@lru_cache()
def get_application() -> Application:
    """Build the application graph once per process."""
    return build_application()


def get_enrollment_core(application: Application = Depends(get_application)) -> EnrollmentCore:
    return application.core


def get_webhook_handler(application: Application = Depends(get_application)) -> WebhookHandler:
    return application.webhook_handler


def get_health_check(application: Application = Depends(get_application)) -> HealthCheck:
    return application.health
