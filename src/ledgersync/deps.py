"""Dependency injection singletons for ledgersync."""

from ledgersync.common.config import get_settings
from ledgersync.common.database import DatabaseManager
from ledgersync.common.retry import RetryExecutor
from ledgersync.deadletter.service import DeadLetterService
from ledgersync.ingestion.handlers import default_registry
from ledgersync.ingestion.processor import EventProcessor
from ledgersync.milestones.service import MilestoneService
from ledgersync.milestones.sweeper import ExpirationSweeper
from ledgersync.verification.service import SubmissionService
from ledgersync.webhooks.service import WebhookService

_db: DatabaseManager | None = None
_dead_letters: DeadLetterService | None = None
_executor: RetryExecutor | None = None
_webhook: WebhookService | None = None
_milestones: MilestoneService | None = None
_submissions: SubmissionService | None = None
_processor: EventProcessor | None = None
_sweeper: ExpirationSweeper | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_dead_letter_service() -> DeadLetterService:
    global _dead_letters
    if _dead_letters is None:
        _dead_letters = DeadLetterService()
    return _dead_letters


def get_retry_executor() -> RetryExecutor:
    global _executor
    if _executor is None:
        _executor = RetryExecutor(get_settings(), get_db(), get_dead_letter_service())
    return _executor


def get_webhook_service() -> WebhookService:
    global _webhook
    if _webhook is None:
        _webhook = WebhookService(get_settings(), db=get_db(), executor=get_retry_executor())
    return _webhook


def get_milestone_service() -> MilestoneService:
    global _milestones
    if _milestones is None:
        _milestones = MilestoneService(get_settings(), webhook_service=get_webhook_service())
    return _milestones


def get_submission_service() -> SubmissionService:
    global _submissions
    if _submissions is None:
        _submissions = SubmissionService(
            get_settings(),
            get_milestone_service(),
            webhook_service=get_webhook_service(),
        )
    return _submissions


def get_event_processor() -> EventProcessor:
    global _processor
    if _processor is None:
        _processor = EventProcessor(
            get_settings(),
            get_db(),
            default_registry(get_milestone_service()),
            get_retry_executor(),
            get_dead_letter_service(),
        )
    return _processor


def get_expiration_sweeper() -> ExpirationSweeper:
    global _sweeper
    if _sweeper is None:
        _sweeper = ExpirationSweeper(get_settings(), get_db(), get_milestone_service())
    return _sweeper


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _db, _dead_letters, _executor, _webhook, _milestones, _submissions
    global _processor, _sweeper
    _db = None
    _dead_letters = None
    _executor = None
    _webhook = None
    _milestones = None
    _submissions = None
    _processor = None
    _sweeper = None
