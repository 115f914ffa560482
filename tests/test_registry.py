"""
Tests for the registry API client, container engine and helm client
"""

import subprocess
from unittest.mock import Mock, patch

import pytest
import requests

from airgap_manager.libs.core.exceptions import (
    AuthenticationError, ChartInstallError, ConfigurationError, ContainerEngineError, RegistryError,
    TransientError
)
from airgap_manager.libs.registry.api import RegistryAPIClient, parse_auth_challenge
from airgap_manager.libs.registry.engine import ContainerEngine, detect_container_runtime
from airgap_manager.libs.registry.helm import HelmClient


def _response(status, json_body=None, headers=None, text=""):
    response = Mock()
    response.status_code = status
    response.headers = headers or {}
    response.json.return_value = json_body or {}
    response.text = text
    return response


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestRegistryAPIClient:
    """Test registry v2 HTTP calls"""

    def test_parse_auth_challenge(self):
        """Test parsing a Bearer challenge header"""
        challenge = parse_auth_challenge(
            'Bearer realm="https://auth.example.com/token",service="registry",scope="repository:knative/operator:pull"'
        )

        assert challenge == {
            'scheme': 'bearer',
            'realm': 'https://auth.example.com/token',
            'service': 'registry',
            'scope': 'repository:knative/operator:pull',
        }

    def test_list_tags_with_basic_auth(self):
        """Test tag listing with a path-prefixed registry"""
        # Arrange
        session = Mock()
        session.headers = {}
        session.request.return_value = _response(200, {"tags": ["v1.18.0", "v1.17.0"]})
        client = RegistryAPIClient("registry.example.com/mirror", "user", "pass", session=session)

        # Act
        tags = client.list_tags("knative/operator")

        # Assert
        assert tags == ["v1.18.0", "v1.17.0"]
        args, kwargs = session.request.call_args
        assert args == ('GET', "https://registry.example.com/v2/mirror/knative/operator/tags/list")
        assert kwargs['auth'] == ("user", "pass")

    def test_bearer_challenge_is_answered_once(self):
        """Test token exchange after a 401 challenge"""
        # Arrange
        session = Mock()
        session.headers = {}
        challenge = {'WWW-Authenticate': 'Bearer realm="https://auth.example.com/token",service="registry"'}
        session.request.side_effect = [_response(401, headers=challenge), _response(200, {"tags": ["v1"]})]
        session.get.return_value = _response(200, {"token": "abc"})
        client = RegistryAPIClient("registry.example.com", "user", "pass", session=session)

        # Act
        tags = client.list_tags("knative/operator")

        # Assert
        assert tags == ["v1"]
        assert session.request.call_args[1]['headers']['Authorization'] == "Bearer abc"
        session.get.assert_called_once()

    def test_rejected_credentials(self):
        """Test 401 without a usable challenge"""
        session = Mock()
        session.headers = {}
        session.request.return_value = _response(401)
        client = RegistryAPIClient("registry.example.com", "user", "wrong", session=session)

        with pytest.raises(AuthenticationError):
            client.list_tags("knative/operator")

    def test_missing_repository_and_tag(self):
        """Test 404 handling for tags and digests"""
        session = Mock()
        session.headers = {}
        session.request.return_value = _response(404)
        client = RegistryAPIClient("registry.example.com", session=session)

        assert client.list_tags("knative/operator") == []
        assert client.get_digest("knative/operator", "v1") is None

    def test_get_digest_reads_header(self):
        session = Mock()
        session.headers = {}
        session.request.return_value = _response(200, headers={"Docker-Content-Digest": "sha256:abc"})
        client = RegistryAPIClient("registry.example.com", session=session)

        assert client.get_digest("knative/operator", "v1") == "sha256:abc"
        assert session.request.call_args[0][0] == 'HEAD'

    def test_delete_not_allowed(self):
        """Test 405 from registries with deletion disabled"""
        session = Mock()
        session.headers = {}
        session.request.return_value = _response(405)
        client = RegistryAPIClient("registry.example.com", session=session)

        with pytest.raises(RegistryError, match="does not allow deletion"):
            client.delete_manifest("knative/operator", "sha256:abc")

    def test_server_error_and_connection_error_are_transient(self):
        session = Mock()
        session.headers = {}
        session.request.side_effect = [_response(503), requests.exceptions.ConnectionError("refused")]
        client = RegistryAPIClient("registry.example.com", session=session)

        with pytest.raises(TransientError):
            client.list_tags("knative/operator")
        with pytest.raises(TransientError):
            client.list_tags("knative/operator")


class TestContainerEngine:
    """Test CLI command construction and failure classification"""

    @patch('airgap_manager.libs.registry.engine.subprocess.run')
    def test_podman_push_disables_tls_verify(self, mock_run):
        """Test insecure registry flag for podman"""
        mock_run.return_value = _completed()
        engine = ContainerEngine("/usr/bin/podman", "podman", tls_verify=False)

        engine.push("registry.example.com/knative/operator:v1.18.0")

        cmd = mock_run.call_args[0][0]
        assert cmd == ["/usr/bin/podman", "push", "--tls-verify=false",
                       "registry.example.com/knative/operator:v1.18.0"]

    @patch('airgap_manager.libs.registry.engine.subprocess.run')
    def test_podman_save_uses_multi_image_archive(self, mock_run, tmp_path):
        mock_run.return_value = _completed()
        engine = ContainerEngine("/usr/bin/podman", "podman")

        engine.save(["a:1", "b:1"], tmp_path / "images.tar")

        cmd = mock_run.call_args[0][0]
        assert cmd[:3] == ["/usr/bin/podman", "save", "--multi-image-archive"]
        assert cmd[-2:] == ["a:1", "b:1"]

    @patch('airgap_manager.libs.registry.engine.subprocess.run')
    def test_login_passes_password_on_stdin(self, mock_run):
        """Test the password never appears in the command line"""
        mock_run.return_value = _completed()
        engine = ContainerEngine("/usr/bin/docker", "docker")

        engine.login("registry.example.com", "user", "hunter2")

        args, kwargs = mock_run.call_args
        assert "hunter2" not in args[0]
        assert kwargs['input'] == "hunter2"

    @pytest.mark.parametrize("stderr, expected", [
        ("unauthorized: authentication required", AuthenticationError),
        ("dial tcp: connection refused", TransientError),
        ("manifest unknown", ContainerEngineError),
    ])
    @patch('airgap_manager.libs.registry.engine.subprocess.run')
    def test_failure_classification(self, mock_run, stderr, expected):
        mock_run.return_value = _completed(returncode=1, stderr=stderr)
        engine = ContainerEngine("/usr/bin/podman", "podman")

        with pytest.raises(expected):
            engine.push("registry.example.com/knative/operator:v1")

    @patch('airgap_manager.libs.registry.engine.subprocess.run')
    def test_image_exists_uses_manifest_inspect(self, mock_run):
        mock_run.side_effect = [_completed(returncode=0), _completed(returncode=1, stderr="manifest unknown")]
        engine = ContainerEngine("/usr/bin/podman", "podman")

        assert engine.image_exists("registry.example.com/knative/operator:v1")
        assert not engine.image_exists("registry.example.com/knative/operator:v2")
        assert mock_run.call_args[0][0][1:3] == ["manifest", "inspect"]

    @patch('airgap_manager.libs.registry.engine.subprocess.run')
    def test_list_images_skips_dangling(self, mock_run):
        mock_run.return_value = _completed(stdout="knative/operator:v1\n<none>:<none>\nenvoy:v1\n")

        assert ContainerEngine("/usr/bin/docker", "docker").list_images() == ["knative/operator:v1", "envoy:v1"]

    @patch('airgap_manager.libs.registry.engine.subprocess.run')
    def test_timeout_is_transient(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="podman", timeout=1)

        with pytest.raises(TransientError):
            ContainerEngine("/usr/bin/podman", "podman").pull("docker.io/envoyproxy/envoy:v1")


class TestDetectContainerRuntime:
    """Test engine resolution"""

    @patch('airgap_manager.libs.registry.engine.shutil.which')
    def test_docker_preferred_when_both_installed(self, mock_which):
        mock_which.side_effect = lambda name: f"/usr/bin/{name}"

        assert detect_container_runtime().name == "docker"

    @patch('airgap_manager.libs.registry.engine.shutil.which')
    def test_falls_back_to_podman(self, mock_which):
        mock_which.side_effect = lambda name: "/usr/bin/podman" if name == "podman" else None

        assert detect_container_runtime().name == "podman"

    @patch('airgap_manager.libs.registry.engine.shutil.which', return_value=None)
    def test_none_installed(self, mock_which):
        with pytest.raises(ConfigurationError, match="No container tool"):
            detect_container_runtime()

    def test_unknown_engine(self):
        with pytest.raises(ConfigurationError, match="Unsupported"):
            detect_container_runtime("nerdctl")


class TestHelmClient:
    """Test helm command construction"""

    @patch('airgap_manager.libs.registry.helm.subprocess.run')
    def test_install_or_upgrade_sets_values(self, mock_run):
        mock_run.return_value = _completed()
        helm = HelmClient(binary="/usr/bin/helm")

        helm.install_or_upgrade("knative-operator", "/bundle/knative-operator-v1.18.0.tgz", "knative-operator",
                                {"knative_operator.knative_operator.tag": "v1.18.0"})

        cmd = mock_run.call_args[0][0]
        assert cmd[:4] == ["/usr/bin/helm", "upgrade", "--install", "knative-operator"]
        assert cmd[-2:] == ["--set", "knative_operator.knative_operator.tag=v1.18.0"]

    @patch('airgap_manager.libs.registry.helm.shutil.which', return_value=None)
    def test_missing_helm(self, mock_which):
        with pytest.raises(ChartInstallError, match="helm CLI not found"):
            HelmClient().release_exists("knative-operator", "knative-operator")

    @patch('airgap_manager.libs.registry.helm.subprocess.run')
    def test_failed_command(self, mock_run):
        mock_run.return_value = _completed(returncode=1, stderr="Error: INSTALLATION FAILED")

        with pytest.raises(ChartInstallError, match="INSTALLATION FAILED"):
            HelmClient(binary="/usr/bin/helm").pull_chart("knative-operator/knative-operator", "v1.18.0", "/tmp")
