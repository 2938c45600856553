"""boto3 client construction, including cross-account role assumption."""

from typing import Any, Optional

import boto3
import structlog
from botocore.config import Config

from ami_replication.core.exceptions import classify_provider_error

logger = structlog.get_logger(__name__)

# Retries are owned by the replication retry policy, not by botocore.
_CLIENT_CONFIG = Config(retries={"max_attempts": 1, "mode": "standard"})


class AwsSessionFactory:
    """
    Build boto3 clients for the source account and for destination accounts.

    Args:
        session: Base session; defaults to a new boto3 session using the
            ambient credentials (Lambda role, profile, environment).
        session_name: RoleSessionName used when assuming destination roles.
    """

    def __init__(
        self,
        session: Optional[boto3.session.Session] = None,
        session_name: str = "ami-replication",
    ):
        self._session = session or boto3.session.Session()
        self._session_name = session_name

    def client(self, service: str, region: Optional[str] = None) -> Any:
        """Client using the factory's own credentials."""
        return self._session.client(service, region_name=region, config=_CLIENT_CONFIG)

    def caller_account_id(self) -> str:
        """Account owning the ambient credentials."""
        try:
            return self.client("sts").get_caller_identity()["Account"]
        except Exception as e:
            raise classify_provider_error(e, "GetCallerIdentity") from e

    def assume_role(self, role_arn: str) -> dict[str, str]:
        """
        Obtain temporary credentials for a destination role.

        Returns:
            Keyword arguments accepted by ``boto3.session.Session.client``.
        """
        try:
            response = self.client("sts").assume_role(
                RoleArn=role_arn,
                RoleSessionName=self._session_name,
            )
        except Exception as e:
            raise classify_provider_error(e, "AssumeRole") from e

        credentials = response["Credentials"]
        logger.debug("role_assumed", role_arn=role_arn)
        return {
            "aws_access_key_id": credentials["AccessKeyId"],
            "aws_secret_access_key": credentials["SecretAccessKey"],
            "aws_session_token": credentials["SessionToken"],
        }

    def client_with_credentials(
        self,
        service: str,
        region: Optional[str],
        credentials: dict[str, str],
    ) -> Any:
        """Client using explicit temporary credentials."""
        return self._session.client(
            service,
            region_name=region,
            config=_CLIENT_CONFIG,
            **credentials,
        )

    def client_for_role(self, service: str, role_arn: str, region: str) -> Any:
        """Client in ``region`` acting as ``role_arn``."""
        return self.client_with_credentials(service, region, self.assume_role(role_arn))
