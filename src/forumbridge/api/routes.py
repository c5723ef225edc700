"""API routes for forumbridge."""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from forumbridge import __version__
from forumbridge.api.auth import verify_oidc_token
from forumbridge.api.models import HealthResponse, MigrateResponse, ProgressResponse
from forumbridge.config import get_settings
from forumbridge.services.migration import run_migration
from forumbridge.services.orchestrator import MigrationResult
from forumbridge.services.preflight import PreflightError
from forumbridge.services.progress import ProgressLedger
from forumbridge.services.retry import ClassifiedError
from forumbridge.utils.cancellation import MigrationCancelled
from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["api"])


def _determine_status(result: MigrationResult) -> str:
    """Determine the response status based on run results."""
    if result.cancelled:
        return "cancelled"
    if result.failed and not result.completed:
        return "failed"
    if result.failed:
        return "partial_success"
    return "success"


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="healthy", version=__version__)


@router.get(
    "/progress",
    response_model=ProgressResponse,
    dependencies=[Depends(verify_oidc_token)],
)
async def progress() -> ProgressResponse:
    """Return the current contents of the progress ledger."""
    state = ProgressLedger.load(get_settings().progress_file).get_state()
    return ProgressResponse(**state.model_dump())


@router.post(
    "/migrate",
    response_model=MigrateResponse,
    dependencies=[Depends(verify_oidc_token)],
)
async def migrate(
    request: Request,
    dry_run: bool = Query(default=False, description="Run without writing to GitHub"),
    resume_from: int | None = Query(
        default=None, ge=0, description="Skip pending threads listed before this thread ID"
    ),
) -> MigrateResponse:
    """Run one migration pass.

    Only one migration runs at a time; a second request while one is in
    flight gets 409. The run is cancelled when the application shuts down.
    """
    lock = request.app.state.migration_lock
    if lock.locked():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Migration already running")

    logger.info("Migrate endpoint called", dry_run=dry_run, resume_from=resume_from)
    settings = get_settings()

    async with lock:
        try:
            result, _ = await run_migration(
                settings,
                request.app.state.cancel_token,
                dry_run=dry_run or settings.dry_run,
                resume_from=resume_from,
            )
        except PreflightError as e:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)
            ) from e
        except ClassifiedError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message) from e
        except MigrationCancelled as e:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.reason
            ) from e

    return MigrateResponse(
        status=_determine_status(result),
        threads_found=result.threads_found,
        threads_pending=result.threads_pending,
        completed=result.completed,
        failed=result.failed,
        failed_thread_ids=result.failed_thread_ids,
        cancelled=result.cancelled,
        dry_run=result.dry_run,
    )
