"""AWS session handling for the boto3-backed providers."""

import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config

from stackweaver.utils.errors import ErrorContext, error_handler
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_REGION = "us-east-1"


@dataclass(frozen=True)
class AccountIdentity:
    """Who the engine acts as, from STS."""
    account_id: str
    arn: str
    region: str
    profile: Optional[str] = None


class AWSClientManager:
    """Owns one boto3 session and a cache of clients built from it.

    Sessions are not safe to share for client construction, so clients are built
    under a lock and then handed out; boto3 clients themselves are thread safe.
    """

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        max_pool_connections: int = 50
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use; the profile or environment default otherwise
            max_pool_connections: Connection pool size, at least the worker count
        """
        self.profile = profile
        self.region = region
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, Any] = {}
        self._identity: Optional[AccountIdentity] = None
        self._lock = threading.Lock()

        # Keep botocore retries low, RetryStrategy owns backoff and deadlines
        self.boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={'mode': 'standard', 'max_attempts': 2},
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        if self._session is None:
            kwargs = {}
            if self.profile:
                kwargs['profile_name'] = self.profile
            if self.region:
                kwargs['region_name'] = self.region
            self._session = boto3.Session(**kwargs)
            logger.info(f"Created AWS session - Region: {self.region_name}, "
                        f"Profile: {self.profile or 'default'}")
        return self._session

    @property
    def region_name(self) -> str:
        return self.session.region_name or DEFAULT_REGION

    def get_client(self, service_name: str):
        """Get a cached boto3 client for a service.

        Args:
            service_name: AWS service name (e.g., 'route53', 'iam')
        """
        with self._lock:
            client = self._clients.get(service_name)
            if client is None:
                client = self.session.client(
                    service_name, region_name=self.region_name, config=self.boto_config
                )
                self._clients[service_name] = client
                logger.debug(f"Created {service_name} client")
            return client

    def identity(self) -> AccountIdentity:
        """Account and caller for the configured credentials, looked up once.

        Raises:
            ProviderError: If no credentials are usable or STS rejects them
        """
        if self._identity is not None:
            return self._identity

        try:
            response = self.get_client('sts').get_caller_identity()
        except Exception as e:
            raise error_handler.handle_exception(
                e, ErrorContext(aws_service='sts', aws_operation='GetCallerIdentity')
            ) from e

        self._identity = AccountIdentity(
            account_id=response['Account'],
            arn=response['Arn'],
            region=self.region_name,
            profile=self.profile
        )
        logger.info(f"Using AWS account {self._identity.account_id} in {self._identity.region}")
        return self._identity
