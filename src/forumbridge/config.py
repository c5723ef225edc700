"""Configuration loading for forumbridge."""

from functools import lru_cache
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from forumbridge.utils.secrets import get_secret_manager

# Values shipped in example configuration files that must be replaced.
PLACEHOLDER_VALUES = frozenset(
    {
        "https://your-forum.com/api",
        "your_xenforo_api_key",
        "your_github_token",
        "your_username/your_repo",
        "DIC_kwDOxxxxxxxx",
    }
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="FORUMBRIDGE_")

    # XenForo settings
    xenforo_api_url: str = Field(description="Base URL of the XenForo REST API")
    xenforo_api_key: str = Field(default="", description="XenForo API key")
    xenforo_api_user: str = Field(default="1", description="XenForo user ID the API key acts as")
    xenforo_node_id: int = Field(description="Forum node whose threads are migrated")
    xenforo_max_retries: int = Field(default=3, ge=0, description="Retries for XenForo calls")

    # GitHub settings
    github_token: str = Field(default="", description="GitHub token with discussion write access")
    github_repository: str = Field(description="Target repository in owner/repo form")
    github_category_id: str = Field(description="Node ID of the target discussion category")
    github_rate_limit_delay: float = Field(default=1.0, description="Seconds before every GitHub call")
    github_max_retries: int = Field(default=5, ge=0, description="Retries for GitHub calls")
    github_retry_backoff_multiple: float = Field(default=2.0, description="Seconds of backoff per retry")

    # Retry limits
    max_backoff: float = Field(default=300.0, description="Upper bound for one backoff wait, in seconds")
    rate_limit_ceiling: float = Field(
        default=7200.0, description="Upper bound for one rate limit reset wait, in seconds"
    )

    # Migration settings
    progress_file: str = Field(default="migration_progress.json", description="Progress ledger path")
    resume_from: int = Field(default=0, ge=0, description="Thread ID to resume from (0 = start)")
    dry_run: bool = Field(default=False, description="Read from XenForo but never write to GitHub")
    verbose: bool = Field(default=False, description="Log rendered bodies in dry-run mode")
    post_delay: float = Field(default=1.0, description="Seconds between posts submitted to GitHub")
    max_quote_passes: int = Field(default=10, ge=1, description="Passes used to unwrap nested quotes")
    request_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    # Filesystem settings
    attachments_dir: str = Field(default="./attachments", description="Attachment sandbox root")
    attachment_rate_limit_delay: float = Field(
        default=0.5, description="Seconds before every attachment download"
    )

    # Application settings
    log_level: str = Field(default="INFO", description="Logging level")
    gcp_project_id: str | None = Field(
        default=None, description="Project whose Secret Manager holds missing tokens"
    )
    skip_auth: bool = Field(default=False, description="Skip OIDC auth for local development")
    allowed_invokers: list[str] = Field(
        default_factory=list, description="Service account e-mails allowed to trigger runs"
    )

    @field_validator("xenforo_api_url")
    @classmethod
    def validate_xenforo_api_url(cls, v: str) -> str:
        """Validate the XenForo API URL."""
        v = v.strip()
        if not v or v in PLACEHOLDER_VALUES:
            raise ValueError(
                "FORUMBRIDGE_XENFORO_API_URL is required. "
                "Set it to your forum's API base URL, e.g. https://forum.example.com/api."
            )
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"FORUMBRIDGE_XENFORO_API_URL '{v}' is not a valid http(s) URL.")
        return v

    @field_validator("xenforo_node_id")
    @classmethod
    def validate_node_id(cls, v: int) -> int:
        """Validate the node ID is positive."""
        if v <= 0:
            raise ValueError("FORUMBRIDGE_XENFORO_NODE_ID must be positive.")
        return v

    @field_validator("xenforo_api_key", "github_token")
    @classmethod
    def reject_placeholder_secret(cls, v: str) -> str:
        """Treat example placeholders as unset."""
        v = v.strip()
        return "" if v in PLACEHOLDER_VALUES else v

    @field_validator("github_repository")
    @classmethod
    def validate_repository(cls, v: str) -> str:
        """Validate the repository is in owner/repo form."""
        v = v.strip()
        if not v or v in PLACEHOLDER_VALUES:
            raise ValueError("FORUMBRIDGE_GITHUB_REPOSITORY is required.")
        parts = v.split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValueError(
                f"FORUMBRIDGE_GITHUB_REPOSITORY '{v}' must be in format 'owner/repo'."
            )
        return v

    @field_validator("github_category_id")
    @classmethod
    def validate_category_id(cls, v: str) -> str:
        """Validate the discussion category is configured."""
        v = v.strip()
        if not v or v in PLACEHOLDER_VALUES:
            raise ValueError(
                "FORUMBRIDGE_GITHUB_CATEGORY_ID must be configured (not the default placeholder)."
            )
        return v

    @field_validator(
        "github_rate_limit_delay",
        "github_retry_backoff_multiple",
        "max_backoff",
        "rate_limit_ceiling",
        "post_delay",
        "attachment_rate_limit_delay",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Delays cannot be negative."""
        if v < 0:
            raise ValueError("delays cannot be negative")
        return v


class SecretsConfig:
    """API credentials, from the environment or Google Cloud Secret Manager."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._github_token: str | None = None
        self._xenforo_api_key: str | None = None

    @property
    def github_token(self) -> str:
        """Get the GitHub token."""
        if self._github_token is None:
            self._github_token = self._resolve(self._settings.github_token, "github-token")
        return self._github_token

    @property
    def xenforo_api_key(self) -> str:
        """Get the XenForo API key."""
        if self._xenforo_api_key is None:
            self._xenforo_api_key = self._resolve(self._settings.xenforo_api_key, "xenforo-api-key")
        return self._xenforo_api_key

    def _resolve(self, value: str, secret_id: str) -> str:
        if value:
            return value
        if not self._settings.gcp_project_id:
            raise ValueError(
                f"Secret '{secret_id}' is not set. Provide it through the environment "
                "or set FORUMBRIDGE_GCP_PROJECT_ID to read it from Secret Manager."
            )
        return get_secret_manager(self._settings.gcp_project_id).get_secret(secret_id)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()  # type: ignore[call-arg]


def get_secrets(settings: Settings | None = None) -> SecretsConfig:
    """Get secrets configuration for the given (or cached) settings."""
    return SecretsConfig(settings or get_settings())
