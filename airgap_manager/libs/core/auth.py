"""
Authentication Module

Handles cluster authentication and context discovery.
"""

import logging
import urllib3
from typing import Optional

from kubernetes import client, config

from .exceptions import AuthenticationError, ConfigurationError
from .utils import validate_openshift_url, handle_ssl_error, mask_sensitive_info

logger = logging.getLogger(__name__)


class ClusterAuth:
    """Handles Kubernetes/OpenShift authentication and context discovery"""

    def __init__(self, skip_tls: bool = False):
        """
        Initialize authentication handler

        Args:
            skip_tls: Whether to skip TLS verification for requests
        """
        self.skip_tls = skip_tls
        self.cluster_url = None
        self.cluster_token = None
        self.k8s_client = None

    def configure_auth(self, cluster_url: str = None, cluster_token: str = None) -> bool:
        """
        Configure authentication with provided URL and token, or discover from context

        Args:
            cluster_url: Cluster API URL (optional)
            cluster_token: Bearer token (optional)

        Returns:
            bool: True if authentication was configured successfully

        Raises:
            AuthenticationError: If authentication configuration fails
            ConfigurationError: If provided parameters are invalid
        """
        try:
            if cluster_url and cluster_token:
                validate_openshift_url(cluster_url)
                logger.info("Using provided cluster URL and token for authentication")
                self.cluster_url = cluster_url
                self.cluster_token = cluster_token
                return self._configure_client_with_token()

            return self._discover_from_context()

        except (ConfigurationError, AuthenticationError):
            raise
        except Exception as e:
            raise AuthenticationError(f"Failed to configure authentication: {e}")

    def _configure_client_with_token(self) -> bool:
        """
        Configure Kubernetes client using URL and token

        Raises:
            AuthenticationError: If client configuration fails
        """
        try:
            configuration = client.Configuration()
            configuration.host = self.cluster_url
            configuration.api_key = {"authorization": self.cluster_token}
            configuration.api_key_prefix = {"authorization": "Bearer"}

            if self.skip_tls:
                configuration.verify_ssl = False
                configuration.ssl_ca_cert = None
                urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

            client.Configuration.set_default(configuration)
            self.k8s_client = client.ApiClient(configuration)

            masked = mask_sensitive_info(self.cluster_url, [self.cluster_token])
            logger.info(f"Successfully configured Kubernetes client for {masked}")
            return True

        except Exception as e:
            handle_ssl_error(e, AuthenticationError)

    def _discover_from_context(self) -> bool:
        """
        Discover authentication from kubeconfig, falling back to in-cluster config

        Returns:
            bool: True if discovery successful, False when neither source is usable
        """
        try:
            config.load_kube_config()
            logger.info("Successfully loaded kubeconfig")
        except Exception as kubeconfig_error:
            logger.warning(f"Failed to load kubeconfig: {kubeconfig_error}")
            try:
                config.load_incluster_config()
                logger.info("Successfully loaded in-cluster config")
            except Exception as incluster_error:
                logger.warning(f"Failed to load in-cluster config: {incluster_error}")
                return False

        self.k8s_client = client.ApiClient()

        if self.skip_tls:
            configuration = self.k8s_client.configuration
            configuration.verify_ssl = False
            configuration.ssl_ca_cert = None
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        self.cluster_url = self.k8s_client.configuration.host
        logger.info("Successfully discovered authentication from context")
        return True

    def is_authenticated(self) -> bool:
        """
        Check if authentication is properly configured
        """
        return self.k8s_client is not None

    def get_api_client(self) -> Optional[client.ApiClient]:
        """
        Get the initialized Kubernetes API client

        Raises:
            AuthenticationError: If authentication has not been configured
        """
        if not self.is_authenticated():
            raise AuthenticationError("Not authenticated - no Kubernetes client available")
        return self.k8s_client
