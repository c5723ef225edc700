"""Unit tests for the HTTP API."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from forumbridge import __version__
from forumbridge.api.auth import verify_oidc_token
from forumbridge.config import Settings, get_settings
from forumbridge.main import app
from forumbridge.services.orchestrator import MigrationResult
from forumbridge.services.preflight import PreflightError
from forumbridge.services.progress import ProgressLedger


def _settings(**overrides) -> Settings:
    values = {
        "xenforo_api_url": "https://forum.example.com/api",
        "xenforo_node_id": 3,
        "github_repository": "octo/forum",
        "github_category_id": "DIC_archive",
        "skip_auth": True,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.delenv("K_SERVICE", raising=False)
    monkeypatch.setenv("FORUMBRIDGE_XENFORO_API_URL", "https://forum.example.com/api")
    monkeypatch.setenv("FORUMBRIDGE_XENFORO_NODE_ID", "3")
    monkeypatch.setenv("FORUMBRIDGE_GITHUB_REPOSITORY", "octo/forum")
    monkeypatch.setenv("FORUMBRIDGE_GITHUB_CATEGORY_ID", "DIC_archive")
    monkeypatch.setenv("FORUMBRIDGE_SKIP_AUTH", "true")
    monkeypatch.setenv("FORUMBRIDGE_PROGRESS_FILE", str(tmp_path / "progress.json"))
    get_settings.cache_clear()
    with TestClient(app) as test_client:
        yield test_client
    get_settings.cache_clear()


class TestBasicEndpoints:
    """Tests for the informational endpoints."""

    def test_root(self, client: TestClient) -> None:
        """The root endpoint names the service."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json() == {"name": "forumbridge", "version": __version__, "docs": "/docs"}

    def test_health(self, client: TestClient) -> None:
        """The health endpoint reports healthy."""
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "version": __version__}

    def test_progress(self, client: TestClient, tmp_path: Path) -> None:
        """The progress endpoint returns the ledger contents."""
        ledger = ProgressLedger.load(tmp_path / "progress.json")
        ledger.mark_completed(4)
        ledger.mark_failed(5)

        response = client.get("/api/v1/progress")

        assert response.status_code == 200
        body = response.json()
        assert body["completed_threads"] == [4]
        assert body["failed_threads"] == [5]
        assert body["last_thread_id"] == 4


class TestMigrateEndpoint:
    """Tests for POST /api/v1/migrate."""

    def test_successful_run(self, client: TestClient) -> None:
        """A run returns its counts and status."""
        result = MigrationResult(threads_found=3, threads_pending=2, completed=2, dry_run=True)
        with patch(
            "forumbridge.api.routes.run_migration", AsyncMock(return_value=(result, MagicMock()))
        ) as run:
            response = client.post("/api/v1/migrate", params={"dry_run": "true", "resume_from": 10})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["completed"] == 2
        assert body["dry_run"] is True
        kwargs = run.await_args.kwargs
        assert kwargs["dry_run"] is True
        assert kwargs["resume_from"] == 10

    def test_partial_failure(self, client: TestClient) -> None:
        """Runs with some failed threads report partial success."""
        result = MigrationResult(threads_found=2, threads_pending=2, completed=1, failed=1)
        with patch(
            "forumbridge.api.routes.run_migration", AsyncMock(return_value=(result, MagicMock()))
        ):
            response = client.post("/api/v1/migrate")

        assert response.json()["status"] == "partial_success"

    def test_preflight_failure(self, client: TestClient) -> None:
        """Failed pre-flight checks map to 503."""
        with patch(
            "forumbridge.api.routes.run_migration",
            AsyncMock(side_effect=PreflightError("GitHub Discussions is not enabled")),
        ):
            response = client.post("/api/v1/migrate")

        assert response.status_code == 503

    def test_negative_resume_from_rejected(self, client: TestClient) -> None:
        """resume_from must be non-negative."""
        response = client.post("/api/v1/migrate", params={"resume_from": -1})
        assert response.status_code == 422

    def test_concurrent_run_conflicts(self, client: TestClient) -> None:
        """A second run while one is in flight gets 409."""
        client.app.state.migration_lock = MagicMock(locked=MagicMock(return_value=True))

        response = client.post("/api/v1/migrate")

        assert response.status_code == 409


class TestVerifyOidcToken:
    """Tests for the OIDC dependency."""

    @pytest.fixture(autouse=True)
    def _not_cloud_run(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("K_SERVICE", raising=False)

    async def test_skip_auth_locally(self) -> None:
        """skip_auth bypasses verification outside Cloud Run."""
        with patch("forumbridge.api.auth.get_settings", return_value=_settings()):
            await verify_oidc_token(None)

    async def test_skip_auth_ignored_on_cloud_run(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """skip_auth has no effect on Cloud Run."""
        monkeypatch.setenv("K_SERVICE", "forumbridge")
        with patch("forumbridge.api.auth.get_settings", return_value=_settings()):
            with pytest.raises(HTTPException) as exc_info:
                await verify_oidc_token(None)
        assert exc_info.value.status_code == 401

    async def test_rejects_non_bearer_header(self) -> None:
        """Only bearer tokens are accepted."""
        with patch("forumbridge.api.auth.get_settings", return_value=_settings(skip_auth=False)):
            with pytest.raises(HTTPException) as exc_info:
                await verify_oidc_token("Basic abc")
        assert exc_info.value.status_code == 401

    async def test_rejects_invalid_token(self) -> None:
        """Tokens that fail verification are rejected."""
        with (
            patch("forumbridge.api.auth.get_settings", return_value=_settings(skip_auth=False)),
            patch(
                "forumbridge.api.auth.id_token.verify_oauth2_token",
                side_effect=ValueError("bad signature"),
            ),
        ):
            with pytest.raises(HTTPException) as exc_info:
                await verify_oidc_token("Bearer token")
        assert exc_info.value.status_code == 401

    async def test_rejects_caller_not_allowed(self) -> None:
        """Valid tokens from other service accounts are forbidden."""
        settings = _settings(skip_auth=False, allowed_invokers=["scheduler@proj.iam.gserviceaccount.com"])
        with (
            patch("forumbridge.api.auth.get_settings", return_value=settings),
            patch(
                "forumbridge.api.auth.id_token.verify_oauth2_token",
                return_value={"email": "other@proj.iam.gserviceaccount.com"},
            ),
        ):
            with pytest.raises(HTTPException) as exc_info:
                await verify_oidc_token("Bearer token")
        assert exc_info.value.status_code == 403

    async def test_accepts_allowed_caller(self) -> None:
        """Valid tokens from allowed invokers pass."""
        settings = _settings(skip_auth=False, allowed_invokers=["scheduler@proj.iam.gserviceaccount.com"])
        with (
            patch("forumbridge.api.auth.get_settings", return_value=settings),
            patch(
                "forumbridge.api.auth.id_token.verify_oauth2_token",
                return_value={"email": "scheduler@proj.iam.gserviceaccount.com", "iss": "accounts.google.com"},
            ),
        ):
            await verify_oidc_token("Bearer token")
