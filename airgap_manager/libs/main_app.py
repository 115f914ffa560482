"""
Main Application

Wires the core, cluster, registry, reconcile and install libraries into the
airgap-manager command line.
"""

import argparse
import logging
import signal
import sys
import tarfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from .core import ClusterAuth, ConfigManager, AirgapConfig, setup_logging, disable_ssl_warnings
from .core.constants import BundleConstants, ErrorMessages, ServerlessConstants
from .core.exceptions import AirgapManagerError, AuthenticationError, ConfigurationError, SequenceAbortedError
from .core.utils import render_template
from .cluster import create_cluster_client
from .install import (
    KnativeInstaller, KnativeUninstaller, InstallReport, ServerlessInstaller, ServerlessInstallReport,
    ServerlessPreparer
)
from .install.uninstall import UninstallReport
from .reconcile.models import ImageReference
from .reconcile.poller import CancellationToken
from .registry import (
    BundleBuilder, CleanupReport, HelmClient, OcMirrorClient, RegistryAPIClient, RegistryCleaner,
    detect_container_runtime
)
from .registry.bundle import DEFAULT_TEMPLATE_PATH

logger = logging.getLogger(__name__)


class AirgapManager:
    """Main application orchestrator for the Air-Gap Manager tool"""

    def __init__(
        self,
        auth_provider: Optional[ClusterAuth] = None,
        config_provider: Optional[ConfigManager] = None,
        engine_factory: Optional[Callable[..., Any]] = None,
        helm_client: Optional[HelmClient] = None,
        cluster_factory: Optional[Callable[..., Any]] = None,
        mirror_factory: Optional[Callable[..., Any]] = None,
        skip_tls: bool = False,
        debug: bool = False
    ):
        """
        Initialize Air-Gap Manager with dependency injection

        Args:
            auth_provider: Authentication provider (defaults to ClusterAuth)
            config_provider: Configuration provider (defaults to ConfigManager)
            engine_factory: Builds the container engine (defaults to detect_container_runtime)
            helm_client: Helm client (defaults to HelmClient)
            cluster_factory: Builds the cluster client from an ApiClient
            mirror_factory: Builds the oc-mirror client (defaults to OcMirrorClient)
            skip_tls: Whether to skip TLS verification
            debug: Enable debug logging
        """
        self.skip_tls = skip_tls
        self.debug = debug

        setup_logging(debug)

        if skip_tls:
            disable_ssl_warnings()

        self.auth = auth_provider or ClusterAuth(skip_tls=skip_tls)
        self.config_manager = config_provider or ConfigManager()
        self.engine_factory = engine_factory or detect_container_runtime
        self.helm = helm_client or HelmClient()
        self.cluster_factory = cluster_factory or create_cluster_client
        self.mirror_factory = mirror_factory or OcMirrorClient
        self._cluster = None

    def configure_authentication(self, openshift_url: str = None, openshift_token: str = None) -> bool:
        """
        Configure cluster authentication

        Returns:
            bool: True if a cluster client is available
        """
        if not self.auth.configure_auth(openshift_url, openshift_token):
            return False
        self._cluster = self.cluster_factory(self.auth.get_api_client())
        logger.debug("Successfully configured authentication and cluster client")
        return True

    @property
    def cluster(self):
        if self._cluster is None:
            raise AuthenticationError("Cluster access is not configured")
        return self._cluster

    def resolve_config(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
                       bundle_dir: Optional[Path] = None) -> AirgapConfig:
        """Load the optional config file and resolve the effective configuration"""
        if config_path:
            self.config_manager.load_config(config_path)
        return self.config_manager.build_airgap_config(overrides=overrides, bundle_dir=bundle_dir)

    def create_engine(self, config: AirgapConfig):
        tls_verify = not (config.skip_tls or config.registry_insecure)
        return self.engine_factory(config.container_cmd, tls_verify=tls_verify)

    def create_mirror(self, config: AirgapConfig):
        return self.mirror_factory(tls_verify=not (config.skip_tls or config.registry_insecure))

    def generate_config(self, output_dir: str = None) -> str:
        return self.config_manager.generate_config_template(output_dir)

    def prepare(self, config: AirgapConfig, output_dir: Path) -> Path:
        builder = BundleBuilder(self.create_engine(config), self.helm, config)
        return builder.build(output_dir)

    def install(self, config: AirgapConfig, bundle_dir: Path, force: bool = False,
                cancel_token: Optional[CancellationToken] = None) -> InstallReport:
        installer = KnativeInstaller(config, bundle_dir, self.cluster, self.create_engine(config), self.helm,
                                     cancel_token=cancel_token)
        return installer.run(force=force)

    def prepare_serverless(self, config: AirgapConfig, output_dir: Path) -> Path:
        return ServerlessPreparer(config, self.create_mirror(config)).run(output_dir)

    def install_serverless(self, config: AirgapConfig, bundle_dir: Path,
                           cancel_token: Optional[CancellationToken] = None) -> ServerlessInstallReport:
        installer = ServerlessInstaller(config, bundle_dir, self.cluster, self.create_engine(config),
                                        self.create_mirror(config), cancel_token=cancel_token)
        return installer.run()

    def uninstall(self) -> UninstallReport:
        return KnativeUninstaller(self.cluster, self.helm).run()

    def clean_registry(self, config: AirgapConfig, skip_local: bool = False,
                       skip_remote: bool = False) -> CleanupReport:
        registry = config.require_registry()
        repositories = cleanup_repositories(config)

        registry_api = None
        if not skip_remote:
            registry_api = RegistryAPIClient(registry, config.push_username, config.push_password,
                                             verify_ssl=not (config.skip_tls or config.registry_insecure))

        engine = None if skip_local else self.create_engine(config)
        cleaner = RegistryCleaner(engine, registry_api, registry, repositories, cluster=self._cluster)
        return cleaner.run(skip_local=skip_local, skip_remote=skip_remote)

    def render(self, config: AirgapConfig, template_path: Optional[Path] = None) -> str:
        template_path = Path(template_path) if template_path else DEFAULT_TEMPLATE_PATH
        if not template_path.is_file():
            raise ConfigurationError(f"Template not found: {template_path}")
        return render_template(template_path.read_text(), config.template_values())


def create_airgap_manager(skip_tls: bool = False, debug: bool = False) -> AirgapManager:
    """
    Factory function to create AirgapManager with default dependencies
    """
    return AirgapManager(skip_tls=skip_tls, debug=debug)


def cleanup_repositories(config: AirgapConfig) -> List[str]:
    """Repositories (below the private registry) holding the configured images"""
    repositories = []
    for _, destination in config.rendered_images():
        repository = ImageReference.parse(destination).repository
        if repository not in repositories:
            repositories.append(repository)
    return repositories


def create_argument_parser():
    """Create and configure argument parser with subcommands using parent parsers"""

    # Common parser: arguments shared by ALL commands
    common_parser = argparse.ArgumentParser(add_help=False)
    common_parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    common_parser.add_argument('--config', help='Configuration file path')

    # Auth parser: arguments shared by commands that talk to the cluster
    auth_parser = argparse.ArgumentParser(add_help=False)
    auth_parser.add_argument('--skip-tls', action='store_true', help='Skip TLS verification for insecure requests')
    auth_parser.add_argument('--openshift-url', help='Cluster API URL')
    auth_parser.add_argument('--openshift-token', help='Cluster bearer token')

    # Registry parser: arguments shared by commands that use the private registry
    registry_parser = argparse.ArgumentParser(add_help=False)
    registry_parser.add_argument('--registry', help='Private registry host (overrides PRIVATE_REGISTRY_URL)')
    registry_parser.add_argument('--container-cmd', choices=['docker', 'podman'], help='Container engine to use')

    parser = argparse.ArgumentParser(
        prog='airgap-manager',
        description='Air-Gap Manager - Install Knative Operator and Serving into air-gapped clusters',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  airgap-manager generate-config --output .
  airgap-manager prepare --config airgap-config.yaml --output ./dist
  airgap-manager install --bundle-dir ./knative-airgapped-1.18.0 --registry registry.example.com
  airgap-manager uninstall --yes
  airgap-manager prepare-serverless --ocp-version 4.16 --output ./serverless-airgapped
  airgap-manager install-serverless --bundle-dir ./serverless-airgapped --registry registry.example.com

Use --help with specific commands for detailed help.
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    prepare_parser = subparsers.add_parser(
        'prepare',
        parents=[common_parser, registry_parser],
        help='Build the air-gapped bundle (connected host)',
        description='Download the operator chart and images and pack them into a bundle archive'
    )
    prepare_parser.add_argument('--output', default='.', help='Directory for the bundle archive')

    install_parser = subparsers.add_parser(
        'install',
        parents=[common_parser, auth_parser, registry_parser],
        help='Push images and install Knative from a bundle',
        description='Push bundle images to the private registry and install Knative Operator and Serving'
    )
    install_parser.add_argument('--bundle-dir', default='.', help='Extracted bundle directory')
    install_parser.add_argument('--force', action='store_true', help='Push every image even if present')
    install_parser.add_argument('--continue-on-timeout', action='store_true',
                                help='Continue with the next stage when a readiness wait times out')

    uninstall_parser = subparsers.add_parser(
        'uninstall',
        parents=[common_parser, auth_parser],
        help='Remove Knative from the cluster',
        description='Delete Knative custom resources, the operator release, namespaces, CRDs and RBAC'
    )
    uninstall_parser.add_argument('--yes', action='store_true', help='Confirm the uninstall')

    clean_parser = subparsers.add_parser(
        'clean-registry',
        parents=[common_parser, auth_parser, registry_parser],
        help='Remove Knative images locally and from the private registry',
        description='Remove Knative images from the local engine, the private registry and OpenShift image streams'
    )
    clean_parser.add_argument('--skip-local', action='store_true', help='Keep local engine images')
    clean_parser.add_argument('--skip-remote', action='store_true', help='Keep private registry manifests')

    render_parser = subparsers.add_parser(
        'render',
        parents=[common_parser, registry_parser],
        help='Render the KnativeServing manifest',
        description='Render the KnativeServing template with the configured registry and versions'
    )
    render_parser.add_argument('--template', help='Template file (defaults to the bundled template)')
    render_parser.add_argument('--bundle-dir', help='Bundle directory to read VERSION markers from')
    render_parser.add_argument('--output', help='Write the manifest to this file instead of stdout')

    prepare_serverless_parser = subparsers.add_parser(
        'prepare-serverless',
        parents=[common_parser],
        help='Mirror the OpenShift Serverless operator to disk (connected host)',
        description='Write an ImageSetConfiguration and run oc-mirror to mirror the Serverless operator to disk'
    )
    prepare_serverless_parser.add_argument('--output', default=ServerlessConstants.DEFAULT_OUTPUT_DIR,
                                           help='Directory to carry into the air-gapped environment')
    prepare_serverless_parser.add_argument('--ocp-version', help='OpenShift version of the operator index')
    prepare_serverless_parser.add_argument('--channel', help='Serverless operator channel')

    install_serverless_parser = subparsers.add_parser(
        'install-serverless',
        parents=[common_parser, auth_parser, registry_parser],
        help='Mirror OpenShift Serverless into the private registry and add its CatalogSource',
        description=('Push a prepare-serverless output into the private registry with oc-mirror, then apply '
                     'the generated mirror policy and CatalogSource')
    )
    install_serverless_parser.add_argument('--bundle-dir', default='.', help='prepare-serverless output directory')
    install_serverless_parser.add_argument('--mirror-path', help='Repository path below the private registry')

    config_parser = subparsers.add_parser(
        'generate-config',
        parents=[common_parser],
        help='Generate a configuration template',
        description='Generate an annotated configuration template'
    )
    config_parser.add_argument('--output', help='Directory for the template (stdout when omitted)')

    return parser


def collect_overrides(args) -> Dict[str, Any]:
    """Command-line values that take precedence over environment and config file"""
    overrides = {
        'registry_url': getattr(args, 'registry', None),
        'container_cmd': getattr(args, 'container_cmd', None),
        'ocp_version': getattr(args, 'ocp_version', None),
        'serverless_channel': getattr(args, 'channel', None),
        'mirror_path': getattr(args, 'mirror_path', None),
    }
    # Flags only override when set
    for flag, option in (('force', 'force_push'), ('continue_on_timeout', 'continue_on_timeout'),
                         ('skip_tls', 'skip_tls'), ('debug', 'debug')):
        if getattr(args, flag, False):
            overrides[option] = True
    return overrides


def configure_authentication_from_args(manager: AirgapManager, args) -> None:
    """
    Raises:
        AuthenticationError: If neither URL/token nor a kube context is usable
    """
    if not manager.configure_authentication(getattr(args, 'openshift_url', None),
                                            getattr(args, 'openshift_token', None)):
        raise AuthenticationError("Failed to configure authentication from context. "
                                  "Pass --openshift-url and --openshift-token or log in with kubectl/oc.")


def print_diagnostics(diagnostics: Dict[str, Any]) -> None:
    if not diagnostics:
        return
    print("\nDiagnostics:", file=sys.stderr)
    print(yaml.safe_dump(diagnostics, sort_keys=False, default_flow_style=False), file=sys.stderr)


def handle_prepare_command(args, manager: AirgapManager) -> int:
    config = manager.resolve_config(args.config, collect_overrides(args))
    archive = manager.prepare(config, Path(args.output))
    print(f"Bundle created: {archive}")
    print(f"Transfer it to the air-gapped host and run: tar -xzf {archive.name}")
    return 0


def handle_install_command(args, manager: AirgapManager) -> int:
    bundle_dir = Path(args.bundle_dir)
    if bundle_dir.is_file() and tarfile.is_tarfile(bundle_dir):
        raise ConfigurationError(f"{bundle_dir} is an archive. Extract it and pass the directory as --bundle-dir.")

    config_path = args.config
    bundled_config = bundle_dir / BundleConstants.BUNDLE_CONFIG_FILE
    if not config_path and bundled_config.is_file():
        config_path = str(bundled_config)

    config = manager.resolve_config(config_path, collect_overrides(args), bundle_dir=bundle_dir)
    configure_authentication_from_args(manager, args)

    cancel_token = CancellationToken()
    signal.signal(signal.SIGTERM, lambda signum, frame: cancel_token.cancel())

    try:
        report = manager.install(config, bundle_dir, force=args.force, cancel_token=cancel_token)
    except SequenceAbortedError as e:
        print(f"Error: {e}", file=sys.stderr)
        if e.report is not None:
            print_diagnostics(e.report.diagnostics)
        return 1

    print(f"\nKnative {config.knative_version} installed successfully.")
    print(f"Images pushed: {len(report.sync.pushed)}, already present: {len(report.sync.skipped)}")
    for stage in report.sequence.stages:
        print(f"  Stage {stage.name}: {stage.status.value}")
        for target in stage.unresolved:
            print(f"    not patched (never appeared): {target}")
    print("\nVerification:")
    print(yaml.safe_dump(report.verification, sort_keys=False, default_flow_style=False))
    return 0


def handle_prepare_serverless_command(args, manager: AirgapManager) -> int:
    config = manager.resolve_config(args.config, collect_overrides(args))
    output_dir = manager.prepare_serverless(config, Path(args.output))
    print(f"OpenShift Serverless {config.serverless_channel} mirrored to {output_dir}")
    print(f"Transfer the directory to the air-gapped host and run: "
          f"airgap-manager install-serverless --bundle-dir {output_dir.name}")
    return 0


def handle_install_serverless_command(args, manager: AirgapManager) -> int:
    config = manager.resolve_config(args.config, collect_overrides(args))
    configure_authentication_from_args(manager, args)

    cancel_token = CancellationToken()
    signal.signal(signal.SIGTERM, lambda signum, frame: cancel_token.cancel())

    report = manager.install_serverless(config, Path(args.bundle_dir), cancel_token=cancel_token)

    print(f"\nOpenShift Serverless mirrored to {report.destination}")
    if report.mirror_manifest:
        print(f"Applied {report.mirror_manifest}")
    for name, outcome in report.catalog_sources.items():
        print(f"  CatalogSource {name}: {outcome.value if outcome else 'not waited'}")
    if not report.catalogs_ready:
        print(f"Some CatalogSources are not ready yet. Check: oc get catalogsource "
              f"-n {ServerlessConstants.CATALOG_SOURCE_NAMESPACE}", file=sys.stderr)
    print("Install the operator from OperatorHub (search for 'Red Hat OpenShift Serverless').")
    return 0


def handle_uninstall_command(args, manager: AirgapManager) -> int:
    if not args.yes:
        print(ErrorMessages.UNINSTALL_NOT_CONFIRMED, file=sys.stderr)
        return 1

    if args.config:
        manager.resolve_config(args.config, collect_overrides(args))
    configure_authentication_from_args(manager, args)
    report = manager.uninstall()

    print(f"Deleted {len(report.deleted)} resources.")
    for failure in report.failures:
        print(f"  failed: {failure}", file=sys.stderr)
    for kind, names in report.remaining.items():
        if names:
            print(f"  still present ({kind}): {', '.join(names)}")
    return 0 if report.succeeded else 1


def handle_clean_registry_command(args, manager: AirgapManager) -> int:
    config = manager.resolve_config(args.config, collect_overrides(args))

    # Image streams are cleaned only when a cluster is reachable
    try:
        manager.configure_authentication(args.openshift_url, args.openshift_token)
    except AirgapManagerError as e:
        logger.warning(f"Skipping OpenShift image stream cleanup: {e}")

    report = manager.clean_registry(config, skip_local=args.skip_local, skip_remote=args.skip_remote)

    print(f"Removed {len(report.removed_local)} local images, deleted {len(report.deleted_remote)} "
          f"remote manifests and {len(report.deleted_image_streams)} image streams.")
    if report.failures:
        print("Some deletions failed (registries may disable deletion):", file=sys.stderr)
        for failure in report.failures:
            print(f"  {failure}", file=sys.stderr)
    return 0


def handle_render_command(args, manager: AirgapManager) -> int:
    bundle_dir = Path(args.bundle_dir) if args.bundle_dir else None
    config = manager.resolve_config(args.config, collect_overrides(args), bundle_dir=bundle_dir)
    config.require_registry()

    template = args.template
    if not template and bundle_dir and (bundle_dir / BundleConstants.SERVING_TEMPLATE).is_file():
        template = bundle_dir / BundleConstants.SERVING_TEMPLATE

    manifest = manager.render(config, template)
    if args.output:
        Path(args.output).write_text(manifest)
        print(f"Manifest written: {args.output}")
    else:
        print(manifest)
    return 0


def handle_generate_config_command(args, manager: AirgapManager) -> int:
    if args.output:
        config_file = manager.generate_config(args.output)
        print(f"Configuration template generated: {config_file}")
    else:
        print(manager.config_manager.get_config_template_content())
    return 0


# Command dispatcher mapping
COMMAND_HANDLERS = {
    'prepare': handle_prepare_command,
    'install': handle_install_command,
    'prepare-serverless': handle_prepare_serverless_command,
    'install-serverless': handle_install_serverless_command,
    'uninstall': handle_uninstall_command,
    'clean-registry': handle_clean_registry_command,
    'render': handle_render_command,
    'generate-config': handle_generate_config_command,
}


def main(argv: Optional[List[str]] = None):
    """Main entry point"""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        manager = create_airgap_manager(skip_tls=getattr(args, 'skip_tls', False),
                                        debug=getattr(args, 'debug', False))
        handler = COMMAND_HANDLERS[args.command]
        exit_code = handler(args, manager)

    except KeyboardInterrupt:
        print("\nOperation cancelled by user.")
        sys.exit(1)
    except AirgapManagerError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
