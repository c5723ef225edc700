"""Pydantic models for API requests and responses."""

from pydantic import BaseModel, Field


class MigrateResponse(BaseModel):
    """Response model for the migrate endpoint."""

    status: str = Field(description="Status of the operation")
    threads_found: int = Field(description="Number of threads listed in the forum node")
    threads_pending: int = Field(description="Number of threads not yet migrated")
    completed: int = Field(description="Number of threads migrated in this run")
    failed: int = Field(description="Number of threads that failed in this run")
    failed_thread_ids: list[int] = Field(default_factory=list, description="IDs of failed threads")
    cancelled: bool = Field(default=False, description="Whether the run was cancelled")
    dry_run: bool = Field(description="Whether this was a dry run")


class ProgressResponse(BaseModel):
    """Response model for the progress endpoint."""

    last_thread_id: int = Field(description="Last thread migrated successfully")
    completed_threads: list[int] = Field(description="Threads migrated so far")
    failed_threads: list[int] = Field(description="Threads whose last attempt failed")
    last_updated: int = Field(description="Unix time of the last ledger update")


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(description="Health status")
    version: str = Field(description="Application version")
