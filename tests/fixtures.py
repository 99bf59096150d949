"""Shared test fixtures, fakes, and builders.

USE THIS FILE FOR:
- Config builders with fast intervals
- Fake HTTP sessions and registries that record calls
- State document builders shaped like Mesos `state.json`
- Wait helpers for monitor threads
"""
import logging
import time

import requests

from mesosync.client import MirrorConfig, RegistryError
from mesosync.registry import Registry

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIG BUILDERS
# ============================================================================

def get_mirror_config(**overrides) -> MirrorConfig:
    """Create MirrorConfig with test-optimized values.
    """
    defaults = {
        'refresh_interval_sec': 0.1,
        'membership_check_interval_sec': 0.05,
        'http_timeout_sec': 1,
    }
    defaults.update(overrides)
    return MirrorConfig(**defaults)


# ============================================================================
# STATE BUILDERS
# ============================================================================

def make_task(task_id: str, follower_id: str = 'S1', state: str = 'TASK_RUNNING',
              ports: str | None = '[8000-8001]', name: str = None) -> dict:
    resources = {'cpus': 0.1, 'mem': 32.0}
    if ports is not None:
        resources['ports'] = ports
    return {
        'id': task_id,
        'name': name or task_id.split('.')[0],
        'slave_id': follower_id,
        'state': state,
        'resources': resources,
    }


def make_follower(follower_id: str = 'S1', ip: str = '10.0.0.2', port: int = 5051) -> dict:
    return {
        'id': follower_id,
        'hostname': f'agent-{follower_id.lower()}.example.com',
        'pid': f'slave(1)@{ip}:{port}',
    }


def make_state(tasks: list[dict] = None, leader: str = 'master@10.0.0.1:5050',
               followers: list[dict] = None, framework_id: str = 'F1',
               framework_name: str = 'marathon') -> dict:
    """Build a decoded `state.json` body with a single framework.
    """
    return {
        'leader': leader,
        'frameworks': [{'id': framework_id, 'name': framework_name, 'tasks': tasks or []}],
        'slaves': followers if followers is not None else [make_follower()],
    }


# ============================================================================
# FAKES
# ============================================================================

class FakeResponse:

    def __init__(self, payload=None, status_code: int = 200, text: str = None):
        self.payload = payload
        self.status_code = status_code
        self.text = text if text is not None else ''

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} error')

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    """Stands in for requests.Session; routes URLs to canned responses.

    Route values may be a payload, a FakeResponse, or an exception to raise.
    A list route answers successive calls with its items in order.
    """

    def __init__(self, routes: dict = None, default_status: int = 200):
        self.routes = routes or {}
        self.default_status = default_status
        self.headers = {}
        self.calls = []
        self.closed = False

    def _respond(self, method: str, url: str, payload=None):
        self.calls.append((method, url, payload))
        route = self.routes.get(url)
        if isinstance(route, list):
            route = route.pop(0) if route else None
        if isinstance(route, Exception):
            raise route
        if isinstance(route, FakeResponse):
            return route
        if route is None and method == 'PUT':
            return FakeResponse(status_code=self.default_status)
        if route is None:
            raise requests.ConnectionError(f'No route to {url}')
        return FakeResponse(route)

    def get(self, url, headers=None, timeout=None):
        return self._respond('GET', url)

    def put(self, url, json=None, timeout=None):
        return self._respond('PUT', url, json)

    def urls(self, method: str = None) -> list[str]:
        return [url for m, url, _ in self.calls if method is None or m == method]

    def close(self) -> None:
        self.closed = True


class FakeRegistry(Registry):
    """Registry that records calls instead of making them.
    """

    def __init__(self, cache: list = None):
        self.registered = []
        self.deregistered = []
        self.fail_register = set()
        self.fail_deregister = set()
        self.fail_all_deregister = False
        self.cache = cache
        self.persisted = []

    def register(self, entry) -> None:
        if entry.id in self.fail_register:
            raise RegistryError(f'refused {entry.id}', [entry.id])
        self.registered.append(entry)

    def deregister(self, ids) -> None:
        if self.fail_all_deregister:
            raise RegistryError('agent unavailable')
        failed = [i for i in ids if i in self.fail_deregister]
        self.deregistered.append([i for i in ids if i not in failed])
        if failed:
            raise RegistryError('refused', failed)

    def cache_supported(self) -> bool:
        return self.cache is not None

    def load_cache(self) -> list:
        return list(self.cache)

    def persist_cache(self, entries) -> None:
        self.persisted.append(list(entries))


# ============================================================================
# WAIT HELPERS
# ============================================================================

def wait_for(predicate, timeout_sec: float = 5.0, check_interval: float = 0.02) -> bool:
    """Poll `predicate` until it is truthy or the timeout elapses.
    """
    deadline = time.time() + timeout_sec
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(check_interval)
    logger.warning(f'Condition not met within {timeout_sec}s')
    return False
