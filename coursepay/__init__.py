from coursepay.config import Settings, configure_logging, load_settings
from coursepay.service import EnrollmentPaymentService, run_with_conflict_retry


def create_service(catalog, offers, settings: Settings = None) -> EnrollmentPaymentService:
    """Wire the service against the configured database and broker."""
    from coursepay import database
    from coursepay.events import build_publisher
    from coursepay.sql_repository import SqlRepository

    settings = settings or load_settings()
    configure_logging(settings)
    session_factory = database.init_db(settings.database_url, settings.repository_timeout)
    return EnrollmentPaymentService(
        SqlRepository(session_factory),
        catalog,
        offers,
        publisher=build_publisher(settings),
        conflict_retries=settings.conflict_retries,
        conflict_backoff=settings.conflict_backoff,
    )


__all__ = [
    "EnrollmentPaymentService",
    "Settings",
    "create_service",
    "load_settings",
    "run_with_conflict_retry",
]
