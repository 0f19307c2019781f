"""Payment provider credentials from SSM Parameter Store.

Keys are SecureString parameters named ``/booking/{env}/{provider}/{name}``.
Values are kept for the life of the process; rotate by redeploying.
"""

import logging
from functools import lru_cache

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class SSMServiceError(Exception):
    """A provider credential could not be read."""


class SSMService:
    """Reads provider credentials in one batched call per provider.

    Usage:
        keys = get_ssm_service().get_provider_secrets("dev", "toss", "client_key", "secret_key")
    """

    def __init__(self, client=None) -> None:
        self._client = client or boto3.client("ssm")
        self._values: dict[str, str] = {}

    @staticmethod
    def parameter_name(environment: str, provider: str, name: str) -> str:
        return f"/booking/{environment}/{provider}/{name}"

    def get_provider_secrets(
        self, environment: str, provider: str, *names: str
    ) -> dict[str, str]:
        """Return ``{name: value}`` for the requested credentials.

        Raises:
            SSMServiceError: a parameter is missing or not readable.
        """
        paths = {name: self.parameter_name(environment, provider, name) for name in names}
        missing = [path for path in paths.values() if path not in self._values]
        if missing:
            self._fetch(missing)
        return {name: self._values[path] for name, path in paths.items()}

    def _fetch(self, paths: list[str]) -> None:
        logger.info("Reading %d provider parameter(s) from SSM", len(paths))
        try:
            response = self._client.get_parameters(Names=paths, WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            if code == "AccessDeniedException":
                raise SSMServiceError(
                    f"Access denied reading {', '.join(paths)}; "
                    "the role needs ssm:GetParameters and kms:Decrypt"
                ) from e
            raise SSMServiceError(f"SSM read failed ({code}): {', '.join(paths)}") from e

        if response.get("InvalidParameters"):
            raise SSMServiceError(
                f"SSM parameter(s) not found: {', '.join(response['InvalidParameters'])}"
            )
        for parameter in response["Parameters"]:
            self._values[parameter["Name"]] = parameter["Value"]


@lru_cache(maxsize=1)
def get_ssm_service() -> SSMService:
    """Process-wide SSMService, shared by every gateway."""
    return SSMService()


def reset_ssm_service() -> None:
    """Forget the client and cached values (tests)."""
    get_ssm_service.cache_clear()
