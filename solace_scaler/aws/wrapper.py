import logging
import threading

import boto3
from botocore.exceptions import ClientError
from botocore.config import Config
from retry import retry

RETRIES_NUMBER = 3
REGION = 'us-east-1'

# Calls to ECS and CloudWatch must not stall a scaling cycle for long
CONNECT_TIMEOUT = 3
READ_TIMEOUT = 10


class AWSWrapper:
    """
    Wrapper class for AWS sessions and clients with retry capabilities.

    Clients are created once per service name and reused; boto3 clients are thread safe,
    so all scaled services share them. The session itself is not, so client creation is
    serialized.
    """

    def __init__(self, sso_profile_name: str = None, region_name: str = REGION):
        self._region_name = region_name
        self._session = self._create_boto_session(sso_profile_name)
        self._clients = {}
        self._client_lock = threading.Lock()

    @retry(exceptions=ClientError, tries=RETRIES_NUMBER, delay=3)
    def _create_boto_session(self, sso_profile_name: str = None):
        logging.debug("Creating boto3 session via " + ("SSO profile name" if sso_profile_name else "default credentials"))
        return boto3.session.Session(profile_name=sso_profile_name, region_name=self._region_name) \
            if sso_profile_name else boto3.session.Session(region_name=self._region_name)

    @property
    def region_name(self):
        return self._region_name

    @retry(exceptions=ClientError, tries=RETRIES_NUMBER, delay=3)
    def create_aws_client(self, service_name: str, config=None):
        """
        Create (or reuse) a boto3 client with retry capability.

        Args:
            service_name: AWS service name ('ecs', 'cloudwatch')
            config: Optional botocore configuration

        Returns:
            Boto3 client for the requested service
        """
        with self._client_lock:
            if config is None and service_name in self._clients:
                return self._clients[service_name]
            return self._create_client(service_name, config)

    def _create_client(self, service_name, config):
        logging.debug(f'creating aws client for: {service_name}')

        default_config = Config(
            connect_timeout=CONNECT_TIMEOUT,
            read_timeout=READ_TIMEOUT,
            retries={'max_attempts': RETRIES_NUMBER, 'mode': 'standard'}
        )
        client = self._session.client(service_name=service_name, region_name=self._region_name,
                                      config=config or default_config)
        if config is None:
            self._clients[service_name] = client
        return client
