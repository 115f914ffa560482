"""
Shared test fakes

In-memory stand-ins for the cluster API, container engine and clock so the
reconciliation components can be tested without external systems.
"""

import copy
from pathlib import Path

import pytest
import yaml

from airgap_manager.libs.core.exceptions import ContainerEngineError


class FakeClock:
    """Monotonic clock whose sleep advances time instantly"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _merge(target, patch):
    """JSON merge patch (RFC 7386)"""
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


def _strategic_merge(target, patch):
    """Strategic merge limited to containers keyed by name"""
    for key, value in patch.items():
        if key == 'containers' and isinstance(value, list):
            existing = {c.get('name'): c for c in target.setdefault('containers', [])}
            for container in value:
                if container.get('name') in existing:
                    existing[container['name']].update(copy.deepcopy(container))
                else:
                    target['containers'].append(copy.deepcopy(container))
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _strategic_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakeCluster:
    """In-memory ClusterAPI"""

    def __init__(self):
        self.objects = {}
        self.calls = []
        self.failures = {}
        self.unavailable_apis = set()
        self.restarts = []
        self.create_count = 0

    @staticmethod
    def _key(api_version, kind, name, namespace=None):
        return (str(api_version), kind, namespace, name)

    def add(self, body):
        metadata = body.get('metadata', {})
        self.objects[self._key(body['apiVersion'], body['kind'], metadata['name'],
                               metadata.get('namespace'))] = copy.deepcopy(body)
        return body

    def fail(self, operation, kind, error):
        """Make the next operation on kind raise error"""
        self.failures[(operation, kind)] = error

    def _maybe_fail(self, operation, kind):
        error = self.failures.pop((operation, kind), None)
        if error is not None:
            raise error

    def has_api(self, api_version, kind):
        return (str(api_version), kind) not in self.unavailable_apis

    def get_resource(self, api_version, kind, name, namespace=None):
        self.calls.append(('get', kind, name, namespace))
        self._maybe_fail('get', kind)
        found = self.objects.get(self._key(api_version, kind, name, namespace))
        return copy.deepcopy(found) if found is not None else None

    def list_resources(self, api_version, kind, namespace=None, label_selector=None):
        self.calls.append(('list', kind, namespace))
        self._maybe_fail('list', kind)
        wanted = {}
        if label_selector:
            for term in label_selector.split(','):
                key, _, value = term.partition('=')
                wanted[key] = value
        items = []
        for (obj_api, obj_kind, obj_ns, _), body in self.objects.items():
            if obj_api != str(api_version) or obj_kind != kind:
                continue
            if namespace is not None and obj_ns != namespace:
                continue
            labels = body.get('metadata', {}).get('labels') or {}
            if all(labels.get(k) == v for k, v in wanted.items()):
                items.append(copy.deepcopy(body))
        return items

    def create_resource(self, body):
        metadata = body.get('metadata', {})
        self.calls.append(('create', body['kind'], metadata.get('name'), metadata.get('namespace')))
        self._maybe_fail('create', body['kind'])
        key = self._key(body['apiVersion'], body['kind'], metadata.get('name'), metadata.get('namespace'))
        if key in self.objects:
            return None
        self.create_count += 1
        self.objects[key] = copy.deepcopy(body)
        return copy.deepcopy(body)

    def patch_resource(self, api_version, kind, name, patch, namespace=None, patch_type="merge"):
        self.calls.append(('patch', kind, name, namespace, patch_type))
        self._maybe_fail('patch', kind)
        key = self._key(api_version, kind, name, namespace)
        body = self.objects[key]
        if patch_type == "strategic":
            _strategic_merge(body, patch)
        else:
            _merge(body, patch)
        return copy.deepcopy(body)

    def delete_resource(self, api_version, kind, name, namespace=None, **kwargs):
        self.calls.append(('delete', kind, name, namespace))
        self._maybe_fail('delete', kind)
        return self.objects.pop(self._key(api_version, kind, name, namespace), None) is not None

    def apply_manifest(self, manifest):
        applied = []
        for document in yaml.safe_load_all(manifest):
            if not document:
                continue
            metadata = document['metadata']
            key = self._key(document['apiVersion'], document['kind'], metadata['name'], metadata.get('namespace'))
            if key in self.objects:
                _merge(self.objects[key], document)
            else:
                self.objects[key] = copy.deepcopy(document)
            applied.append(copy.deepcopy(self.objects[key]))
        self.calls.append(('apply', len(applied)))
        return applied

    def restart_workloads(self, namespace, label_selector=None):
        self.restarts.append(namespace)
        return 0

    def snapshot_pods(self, namespace):
        return [{"name": body['metadata']['name'], "phase": (body.get('status') or {}).get('phase', 'Unknown')}
                for body in self.list_resources("v1", "Pod", namespace=namespace)]


class FakeEngine:
    """Container engine that records calls against an in-memory registry"""

    name = "podman"

    def __init__(self, registry_images=None):
        self.registry_images = set(registry_images or [])
        self.calls = []
        self.fail_push = set()
        self.fail_tag = set()
        self.logged_in = True
        self.local_images = []

    def pull(self, ref):
        self.calls.append(('pull', ref))

    def save(self, refs, archive_path):
        self.calls.append(('save', tuple(refs), str(archive_path)))
        Path(archive_path).write_bytes(b"images")

    def load(self, archive_path):
        self.calls.append(('load', str(archive_path)))

    def tag(self, source, destination):
        self.calls.append(('tag', source, destination))
        if destination in self.fail_tag:
            raise ContainerEngineError(f"tag failed: {destination}")

    def push(self, ref):
        self.calls.append(('push', ref))
        if ref in self.fail_push:
            raise ContainerEngineError(f"push failed: {ref}")
        self.registry_images.add(ref)

    def image_exists(self, ref):
        self.calls.append(('exists', ref))
        return ref in self.registry_images

    def login(self, registry, username, password):
        self.calls.append(('login', registry, username))
        self.logged_in = True

    def is_logged_in(self, registry):
        return self.logged_in

    def list_images(self):
        return list(self.local_images)

    def remove_image(self, ref):
        self.calls.append(('rmi', ref))
        self.local_images.remove(ref)

    def prune(self):
        self.calls.append(('prune',))

    def operations(self, name):
        return [call for call in self.calls if call[0] == name]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def engine():
    return FakeEngine()
