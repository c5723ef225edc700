"""Google Cloud Secret Manager access for API credentials."""

from functools import lru_cache

from google.cloud import secretmanager

from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)


class SecretManagerClient:
    """Reads credentials stored as Secret Manager secrets."""

    def __init__(self, project_id: str) -> None:
        self._project_id = project_id
        self._client = secretmanager.SecretManagerServiceClient()

    def secret_path(self, secret_id: str, version: str = "latest") -> str:
        return self._client.secret_version_path(self._project_id, secret_id, version)

    def get_secret(self, secret_id: str, version: str = "latest") -> str:
        """Return the payload of a secret version, stripped of surrounding whitespace.

        Raises:
            google.api_core.exceptions.NotFound: If the secret does not exist.
        """
        logger.info("Reading secret", secret_id=secret_id, version=version)
        response = self._client.access_secret_version(
            request={"name": self.secret_path(secret_id, version)}
        )
        return response.payload.data.decode("UTF-8").strip()


@lru_cache(maxsize=4)
def get_secret_manager(project_id: str) -> SecretManagerClient:
    """Get or create a cached SecretManagerClient for a project."""
    return SecretManagerClient(project_id)
