"""
Constants Module

Centralized constants for the Air-Gap Manager tool to eliminate magic strings
and improve maintainability.
"""


class KubernetesConstants:
    """Kubernetes-related constants"""

    from enum import Enum

    # Namespaces managed by the installer
    OPERATOR_NAMESPACE = "knative-operator"
    SERVING_NAMESPACE = "knative-serving"
    EVENTING_NAMESPACE = "knative-eventing"
    KOURIER_NAMESPACE = "kourier-system"

    # Image pull secret created in every managed namespace
    PULL_SECRET_NAME = "knative-registry-creds"
    DOCKER_CONFIG_SECRET_TYPE = "kubernetes.io/dockerconfigjson"
    DOCKER_CONFIG_KEY = ".dockerconfigjson"

    # Helm release
    OPERATOR_RELEASE_NAME = "knative-operator"

    # Operator workloads (deployment name == container name == service account)
    OPERATOR_DEPLOYMENTS = ["knative-operator", "operator-webhook"]

    # The operator webhook pod can come up unready and stay that way until recreated
    OPERATOR_WEBHOOK_LABEL = "app.kubernetes.io/component=operator-webhook"
    WEBHOOK_SETTLE_SECONDS = 5
    WEBHOOK_RESTART_SECONDS = 10

    # Service account the serving stage waits for before patching
    SERVING_CONTROLLER_SERVICE_ACCOUNT = "controller"

    # KnativeServing custom resource
    KNATIVE_SERVING_NAME = "knative-serving"
    KNATIVE_OPERATOR_API_VERSION = "operator.knative.dev/v1beta1"
    KNATIVE_SERVING_KIND = "KnativeServing"
    KNATIVE_EVENTING_KIND = "KnativeEventing"

    # Storage version migration job
    STORAGE_MIGRATION_LABEL = "app=storage-version-migration-serving"
    SYSTEM_NAMESPACE_ENV = "SYSTEM_NAMESPACE"

    # OpenShift image streams
    IMAGE_API_VERSION = "image.openshift.io/v1"
    IMAGE_STREAM_KIND = "ImageStream"
    IMAGE_STREAM_NAMESPACES = ["knative", "envoyproxy"]

    KOURIER_SERVICE = "kourier"

    class ApiVersion(str, Enum):
        """API versions used with the dynamic client"""
        CORE = "v1"
        APPS = "apps/v1"
        BATCH = "batch/v1"
        RBAC = "rbac.authorization.k8s.io/v1"
        APIEXTENSIONS = "apiextensions.k8s.io/v1"
        ADMISSION = "admissionregistration.k8s.io/v1"
        APIREGISTRATION = "apiregistration.k8s.io/v1"

        def __str__(self) -> str:
            """Return the apiVersion string for use in API calls"""
            return self.value


class BundleConstants:
    """Bundle layout and file names"""

    IMAGES_ARCHIVE = "knative-images.tar"
    VERSION_FILE = "VERSION"
    ENVOY_VERSION_FILE = "ENVOY_VERSION"
    SERVING_TEMPLATE = "knative-serving.yaml.tpl"
    SERVING_MANIFEST = "knative-serving.yaml"
    BUNDLE_CONFIG_FILE = "airgap-config.yaml"
    BUNDLE_NAME_TEMPLATE = "knative-airgapped-{version}"

    CHART_NAME = "knative-operator"
    CHART_REPO_NAME = "knative-operator"
    CHART_REPO_URL = "https://knative.github.io/operator"
    # helm pull names the archive after the chart version, which may or may not carry a "v"
    CHART_FILE_TEMPLATES = ["knative-operator-v{version}.tgz", "knative-operator-{version}.tgz"]

    DEFAULT_KNATIVE_VERSION = "1.18.0"
    DEFAULT_ENVOY_VERSION = "v1.31.2"

    # Placeholders substituted in the serving template
    TEMPLATE_TOKENS = ["PRIVATE_REGISTRY_URL", "KNATIVE_VERSION", "ENVOY_VERSION"]


class TimeoutConstants:
    """Timeouts and retry bounds (seconds)"""

    OPERATOR_TIMEOUT = 300
    SERVING_TIMEOUT = 300
    POLL_INTERVAL = 10
    PATCH_ATTEMPTS = 6
    PATCH_RETRY_DELAY = 5.0
    PATCH_RETRY_BACKOFF = 1.5
    PATCH_RETRY_MAX_DELAY = 30.0
    COMMAND_TIMEOUT = 600
    MIRROR_TIMEOUT = 7200
    CATALOG_TIMEOUT = 300
    HTTP_TIMEOUT = 30
    DELETE_TIMEOUT = 120


class ContainerConstants:
    """Container engine constants"""

    from enum import Enum

    class Engine(str, Enum):
        """Supported container engines"""
        DOCKER = "docker"
        PODMAN = "podman"

        def __str__(self) -> str:
            """Return the binary name"""
            return self.value

    # When both engines are installed and none is configured
    DEFAULT_ENGINE = "docker"

    DOCKER_CONFIG_PATH = "~/.docker/config.json"

    CLEANUP_PATTERNS = ["knative", "kourier", "envoy"]


class ServerlessConstants:
    """OpenShift Serverless mirroring through oc-mirror"""

    DEFAULT_OCP_VERSION = "4.16"
    DEFAULT_CHANNEL = "stable"
    DEFAULT_MIRROR_PATH = "mirror"
    DEFAULT_OUTPUT_DIR = "serverless-airgapped"
    PACKAGE_NAME = "serverless-operator"
    CATALOG_TEMPLATE = "registry.redhat.io/redhat/redhat-operator-index:v{ocp_version}"

    IMAGESET_API_VERSION = "mirror.openshift.io/v1alpha2"
    IMAGESET_CONFIG_FILE = "imageset-config.yaml"
    METADATA_DIR = "./metadata"
    MIRROR_OUTPUT_DIR = "mirror-output"
    WORKSPACE_DIR = "oc-mirror-workspace"
    RESULTS_PATTERN = "results-*"

    # Mirror manifests written by oc-mirror into the results directory, preferred first
    MIRROR_MANIFESTS = ["imageContentSourcePolicy.yaml", "imageDigestMirrorSet.yaml"]
    CATALOG_SOURCE_PATTERN = "catalogSource*.yaml"
    CATALOG_SOURCE_NAMESPACE = "openshift-marketplace"
    CATALOG_SOURCE_API_VERSION = "operators.coreos.com/v1alpha1"
    CATALOG_SOURCE_KIND = "CatalogSource"
    CATALOG_READY_STATE = "READY"

    DOWNLOAD_BASE = "https://mirror.openshift.com/pub/openshift-v4/{arch}/clients/ocp/stable"
    DOWNLOAD_FILES = {"x86_64": "oc-mirror.tar.gz", "arm64": "oc-mirror.rhel9.tar.gz"}


class NetworkConstants:
    """Network-related constants"""

    USER_AGENT = "airgap-manager/1.0"

    # Manifest media types accepted when resolving a digest
    MANIFEST_ACCEPT = ", ".join([
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ])
    DIGEST_HEADER = "Docker-Content-Digest"


class UninstallConstants:
    """Cluster-scoped leftovers removed by name pattern on uninstall"""

    # (apiVersion, kind, patterns)
    CLUSTER_SCOPED_PATTERNS = [
        ("rbac.authorization.k8s.io/v1", "ClusterRoleBinding", ["knative", "kourier"]),
        ("rbac.authorization.k8s.io/v1", "ClusterRole", ["knative", "kourier"]),
        ("apiextensions.k8s.io/v1", "CustomResourceDefinition", ["knative.dev"]),
        ("admissionregistration.k8s.io/v1", "ValidatingWebhookConfiguration", ["knative"]),
        ("admissionregistration.k8s.io/v1", "MutatingWebhookConfiguration", ["knative"]),
        ("apiregistration.k8s.io/v1", "APIService", ["knative"]),
    ]

    # Namespaced workloads whose finalizers are cleared before namespace deletion
    FINALIZER_KINDS = [
        ("v1", "Pod"),
        ("v1", "Service"),
        ("apps/v1", "Deployment"),
        ("apps/v1", "ReplicaSet"),
        ("batch/v1", "Job"),
    ]


class FileConstants:
    """File and directory related constants"""

    DEFAULT_CONFIG_FILE = "airgap-config.yaml"


class ErrorMessages:
    """Centralized error message templates"""

    SSL_CERT_VERIFICATION_FAILED = (
        "SSL certificate verification failed. The cluster is using self-signed certificates.\n"
        "To resolve this issue, add the --skip-tls flag to your command."
    )

    SSL_CONNECTION_ERROR = (
        "SSL connection error occurred. If using self-signed certificates, add --skip-tls flag.\n"
        "Original error: {error}"
    )

    UNAUTHORIZED = (
        "Unauthorized (401). Verify that your token is valid and has permissions."
    )

    FORBIDDEN = (
        "Forbidden (403). Your credentials are valid but lack necessary permissions. "
        "Contact your cluster administrator to grant appropriate RBAC permissions."
    )

    IMAGES_ARCHIVE_NOT_FOUND = (
        "{archive} not found. Make sure you extracted the bundle correctly."
    )

    CHART_NOT_FOUND = (
        "Helm chart not found in {bundle_dir}. Looked for: {candidates}"
    )

    REGISTRY_REQUIRED = (
        "Private registry URL is required. Set PRIVATE_REGISTRY_URL, "
        "registry.url in the config file, or pass --registry."
    )

    NOT_LOGGED_IN = (
        "Not logged in to {registry}.\n"
        "Please either:\n"
        "  1. Set PRIVATE_REGISTRY_USERNAME and PRIVATE_REGISTRY_PASSWORD environment variables, or\n"
        "  2. Log in manually: {engine} login {registry}"
    )

    NO_CONTAINER_ENGINE = "No container tool found. Please install docker or podman."

    ENGINE_NOT_INSTALLED = "{engine} is not installed or not in PATH."

    HELM_NOT_FOUND = "helm CLI not found. Please install Helm v3.14+ and ensure it's in your PATH."

    OC_MIRROR_NOT_FOUND = (
        "oc-mirror not found. Download it from {url}, extract it and put it in your PATH."
    )

    DOCKER_CONFIG_NOT_FOUND = (
        "{path} not found. Log in to registry.redhat.io first: podman login registry.redhat.io"
    )

    MIRROR_OUTPUT_NOT_FOUND = (
        "{path} not found. Run prepare-serverless on a connected host and copy its output here."
    )

    PULL_CREDENTIALS_REQUIRED = (
        "Pull credentials are required to create image pull secrets. Set "
        "PRIVATE_REGISTRY_PULL_USERNAME/PASSWORD or PRIVATE_REGISTRY_USERNAME/PASSWORD."
    )

    UNINSTALL_NOT_CONFIRMED = (
        "Uninstall removes Knative namespaces, CRDs and cluster RBAC. Re-run with --yes to proceed."
    )
