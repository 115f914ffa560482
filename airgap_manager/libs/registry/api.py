"""
Registry API Client

Minimal Docker Registry v2 / OCI distribution client used for cleanup:
list tags, resolve digests and delete manifests. Handles Basic auth and
Bearer token challenges.
"""

import logging
import re
from typing import Dict, List, Optional

import requests

from ..core.constants import NetworkConstants, TimeoutConstants
from ..core.exceptions import AuthenticationError, RegistryError, TransientError
from ..core.utils import handle_ssl_error, truncate_string

logger = logging.getLogger(__name__)


def parse_auth_challenge(header: str) -> Dict[str, str]:
    """
    Parse a WWW-Authenticate header

    Returns:
        Dict with 'scheme' and any key="value" parameters (realm, service, scope)
    """
    if not header:
        return {}
    scheme, _, params = header.strip().partition(' ')
    challenge = {'scheme': scheme.lower()}
    for key, value in re.findall(r'(\w+)="([^"]*)"', params):
        challenge[key] = value
    return challenge


class RegistryAPIClient:
    """HTTP client for the private registry's v2 API"""

    def __init__(self, registry: str, username: Optional[str] = None, password: Optional[str] = None,
                 verify_ssl: bool = True, session: Optional[requests.Session] = None, scheme: str = "https"):
        """
        Initialize registry API client

        Args:
            registry: Registry host, optionally with a path prefix (host:port/prefix)
            username: Registry username for Basic auth and token requests
            password: Registry password
            verify_ssl: Verify TLS certificates
            session: requests session (injectable for tests)
            scheme: URL scheme
        """
        host, _, prefix = registry.strip('/').partition('/')
        self.host = host
        self.prefix = prefix
        self.base_url = f"{scheme}://{host}"
        self.username = username
        self.password = password
        self.verify_ssl = verify_ssl
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': NetworkConstants.USER_AGENT})
        self._tokens: Dict[str, str] = {}

    def _repository_path(self, repository: str) -> str:
        repository = repository.strip('/')
        return f"{self.prefix}/{repository}" if self.prefix else repository

    def _basic_auth(self):
        if self.username and self.password:
            return (self.username, self.password)
        return None

    def _fetch_token(self, challenge: Dict[str, str]) -> str:
        """Exchange credentials for a Bearer token at the challenge realm"""
        params = {key: challenge[key] for key in ('service', 'scope') if challenge.get(key)}
        try:
            response = self.session.get(challenge['realm'], params=params, auth=self._basic_auth(),
                                        verify=self.verify_ssl, timeout=TimeoutConstants.HTTP_TIMEOUT)
        except requests.exceptions.SSLError as e:
            handle_ssl_error(e, RegistryError)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransientError(f"Token service unreachable: {e}")

        if response.status_code in (401, 403):
            raise AuthenticationError(f"Registry token request rejected for {self.host}")
        if response.status_code != 200:
            raise RegistryError(f"Token request failed ({response.status_code}): {truncate_string(response.text)}")

        body = response.json()
        token = body.get('token') or body.get('access_token')
        if not token:
            raise RegistryError("Token response did not contain a token")
        return token

    def _request(self, method: str, path: str, headers: Optional[Dict[str, str]] = None) -> requests.Response:
        """
        Send a request, answering one auth challenge if the registry issues it

        Raises:
            AuthenticationError: Credentials rejected
            TransientError: Registry unreachable or overloaded
            RegistryError: Any other failure
        """
        url = f"{self.base_url}{path}"
        headers = dict(headers or {})
        token = self._tokens.get(path)
        if token:
            headers['Authorization'] = f"Bearer {token}"

        response = self._send(method, url, headers, auth=None if token else self._basic_auth())

        if response.status_code == 401:
            challenge = parse_auth_challenge(response.headers.get('WWW-Authenticate', ''))
            if challenge.get('scheme') == 'bearer' and challenge.get('realm'):
                token = self._fetch_token(challenge)
                self._tokens[path] = token
                headers['Authorization'] = f"Bearer {token}"
                response = self._send(method, url, headers, auth=None)

        if response.status_code == 401:
            raise AuthenticationError(f"Registry {self.host} rejected credentials for {method} {path}")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"Registry {self.host} unavailable ({response.status_code}) for {method} {path}")

        return response

    def _send(self, method: str, url: str, headers: Dict[str, str], auth) -> requests.Response:
        logger.debug(f"{method} {url}")
        try:
            return self.session.request(method, url, headers=headers, auth=auth,
                                        verify=self.verify_ssl, timeout=TimeoutConstants.HTTP_TIMEOUT)
        except requests.exceptions.SSLError as e:
            handle_ssl_error(e, RegistryError)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransientError(f"Registry {self.host} unreachable: {e}")

    def list_tags(self, repository: str) -> List[str]:
        """List tags of a repository (empty when the repository does not exist)"""
        path = f"/v2/{self._repository_path(repository)}/tags/list"
        response = self._request('GET', path)
        if response.status_code == 404:
            return []
        if response.status_code != 200:
            raise RegistryError(f"Listing tags for {repository} failed ({response.status_code})")
        return response.json().get('tags') or []

    def get_digest(self, repository: str, tag: str) -> Optional[str]:
        """Resolve a tag to its manifest digest, or None when the tag is absent"""
        path = f"/v2/{self._repository_path(repository)}/manifests/{tag}"
        response = self._request('HEAD', path, headers={'Accept': NetworkConstants.MANIFEST_ACCEPT})
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise RegistryError(f"Resolving {repository}:{tag} failed ({response.status_code})")
        return response.headers.get(NetworkConstants.DIGEST_HEADER)

    def delete_manifest(self, repository: str, digest: str) -> None:
        """
        Delete a manifest by digest (already-absent manifests are ignored)

        Raises:
            RegistryError: If the registry refuses deletion
        """
        path = f"/v2/{self._repository_path(repository)}/manifests/{digest}"
        response = self._request('DELETE', path)
        if response.status_code in (200, 202, 404):
            return
        if response.status_code == 405:
            raise RegistryError(f"Registry {self.host} does not allow deletion (405) for {repository}")
        raise RegistryError(f"Deleting {repository}@{digest} failed ({response.status_code}): "
                            f"{truncate_string(response.text)}")
