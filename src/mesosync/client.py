"""Mirror the live Mesos task topology into a service registry.
"""
import functools
import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field

import requests
from sqlalchemy import create_engine, text

from mesosync.schema import get_table_names

logger = logging.getLogger(__name__)

__all__ = ['Mirror', 'MirrorConfig', 'LeaderLocator', 'StateFetcher',
           'Reconciler', 'RegistrationCache', 'MesosyncError']

TASK_RUNNING = 'TASK_RUNNING'


# ============================================================
# EVENT SYSTEM
# ============================================================

@dataclass
class WatchEvent:
    """Notification delivered by the coordination-service watch.
    """
    type: str
    data: dict
    timestamp: float = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = time.time()


class EventQueue:
    """Thread-safe queue the coordination watch publishes membership events to.
    """

    def __init__(self):
        self._events = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def publish(self, event_type: str, data: dict = None) -> None:
        """Queue a watch event; the membership monitor applies it on its next pass.
        """
        with self._lock:
            self._events.append(WatchEvent(event_type, data or {}))

    def consume_all(self) -> list[WatchEvent]:
        """Take every pending event, oldest first.
        """
        with self._lock:
            events, self._events = self._events, []
            return events


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass
class MirrorConfig:
    """Configuration for the Mesos to registry mirror.

    All timing parameters are in seconds.
    Connection parameters are for the optional registration cache database.
    """
    zk: str = 'zk://127.0.0.1:2181/mesos'
    master_port: int = 5050
    state_endpoint: str = '/master/state.json'
    refresh_interval_sec: int = 60
    membership_check_interval_sec: float = 1.0
    http_timeout_sec: int = 10

    service_prefix: str = 'mesos'
    register_hosts: bool = False

    consul_url: str = 'http://127.0.0.1:8500'
    consul_token: str = ''

    cache_enabled: bool = False
    host: str = 'localhost'
    port: int = 5432
    dbname: str = 'mesosync'
    user: str = 'postgres'
    password: str = 'postgres'
    appname: str = 'mesosync_'
    connection_string: str = None


def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )


def retry_with_backoff(max_attempts: int = 3, base_delay: float = 0.5, operation_name: str = None,
                       retry_on: tuple = (Exception,)):
    """Retry a cache-store call, doubling the pause after each failure.

    The last failure propagates unchanged.
    """
    def decorator(func: callable):
        name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    delay = base_delay * 2 ** (attempt - 1)
                    logger.warning(f'{name} failed ({attempt}/{max_attempts}): {e}, retrying in {delay:.1f}s')
                    time.sleep(delay)
            return func(*args, **kwargs)
        return wrapper
    return decorator


def log_duration(operation_name: str = None):
    """Log how long each call of the wrapped function took.
    """
    def decorator(func: callable):
        name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start = time.monotonic()
            result = func(*args, **kwargs)
            logger.info(f'{name} completed in {int((time.monotonic() - start) * 1000)}ms')
            return result
        return wrapper
    return decorator



# ============================================================
# EXCEPTIONS
# ============================================================

class MesosyncError(Exception):
    """Base class for mirror failures.
    """


class NoLeaderError(MesosyncError):
    """Raised when no cluster-manager leader is known yet.
    """


class FetchError(MesosyncError):
    """Raised when the state document cannot be loaded or decoded.
    """


class EmptyLeaderError(FetchError):
    """Raised when a decoded state document reports no leader.
    """


class ParseError(MesosyncError, ValueError):
    """Raised for structurally invalid fields such as a malformed port range.
    """


class RegistryError(MesosyncError):
    """Raised when a registry call fails.

    `ids` names the service ids the failure applies to, when known.
    """

    def __init__(self, message: str, ids=()):
        super().__init__(message)
        self.ids = list(ids)


# ============================================================
# PARSING
# ============================================================

_BRACKETED = re.compile(r'\[([^\[\]]*)\]')
_ADDRESS = re.compile(r'^(?:[a-z][a-z0-9+.-]*://)?(?:[^@/]*@)?(?P<host>[^:/@]+)(?::(?P<port>\d+))?/?$', re.I)
_SERVICE_NAME = re.compile(r'[^a-z0-9-]+')


def decode_ports(ports: str) -> list[int]:
    """Flatten a Mesos port resource string into the ports it covers.

    >>> decode_ports('[31000-31002, 31005-31005]')
    [31000, 31001, 31002, 31005]

    Raises
        ParseError: If the string has no bracketed list or a bound is not numeric
    """
    if not isinstance(ports, str):
        raise ParseError(f'Port resource must be a string, got {type(ports).__name__}')
    match = _BRACKETED.search(ports)
    if match is None:
        raise ParseError(f'No bracketed port range in {ports!r}')
    body = match.group(1).strip()
    if not body:
        return []

    result = []
    for segment in body.split(','):
        bounds = [b.strip() for b in segment.strip().split('-')]
        if len(bounds) == 1:
            bounds = bounds * 2
        if len(bounds) != 2:
            raise ParseError(f'Invalid port segment {segment.strip()!r} in {ports!r}')
        try:
            lo, hi = int(bounds[0]), int(bounds[1])
        except ValueError as e:
            raise ParseError(f'Non-numeric port bound in {segment.strip()!r}') from e
        if lo > hi:
            raise ParseError(f'Port range {lo}-{hi} is descending')
        result.extend(range(lo, hi + 1))
    return result


def parse_address(address: str) -> tuple[str, int | None]:
    """Extract host and port from addresses like `master@10.0.0.1:5050`.

    Accepts an optional scheme and `id@` prefix; the port is None when absent.

    >>> parse_address('master@10.0.0.1:5050')
    ('10.0.0.1', 5050)
    >>> parse_address('slave(1)@10.0.0.2:5051')
    ('10.0.0.2', 5051)
    """
    match = _ADDRESS.match((address or '').strip())
    if match is None:
        raise ParseError(f'Cannot parse address {address!r}')
    port = match.group('port')
    return match.group('host'), int(port) if port else None


def service_id(prefix: str, framework_id: str, task_id: str) -> str:
    """Registry id for a task, stable across refreshes and restarts.
    """
    return f'{prefix}:{framework_id}:{task_id}'


def service_name(name: str) -> str:
    """Registry-safe service name (lowercase letters, digits and dashes).

    >>> service_name('web.Frontend_v2')
    'web-frontend-v2'
    """
    return _SERVICE_NAME.sub('-', name.lower()).strip('-')


def parse_master_info(data: bytes | str) -> 'Host':
    """Decode a ZooKeeper `json.info_*` leader node into a Host.
    """
    try:
        info = json.loads(data)
        address = info.get('address') or {}
        ip = address.get('ip') or info.get('hostname')
        port = int(address.get('port') or info['port'])
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        raise ParseError(f'Invalid master info: {e}') from e
    if not ip:
        raise ParseError('Master info carries no address')
    return Host(ip, port)


def notify_membership(events: EventQueue, payloads) -> list['Host']:
    """Publish the masters found in watched ZooKeeper nodes.

    Args:
        events: Queue the membership monitor drains
        payloads: Node data in election order (lowest sequence first)

    Returns
        The hosts that were published
    """
    hosts = []
    for data in payloads:
        try:
            hosts.append(parse_master_info(data))
        except ParseError as e:
            logger.warning(f'Ignoring master node: {e}')
    events.publish('membership_changed', {'hosts': hosts})
    return hosts


# ============================================================
# STATE MODEL
# ============================================================

@dataclass(frozen=True)
class Host:
    """A cluster-manager node.
    """
    ip: str
    port: int

    def __str__(self) -> str:
        return f'{self.ip}:{self.port}'


@dataclass
class Task:
    id: str
    name: str
    follower_id: str
    state: str
    resources: dict = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict) -> 'Task':
        return cls(
            id=data['id'],
            name=data.get('name') or data['id'],
            follower_id=data.get('slave_id') or data.get('agent_id'),
            state=data.get('state', ''),
            resources=data.get('resources') or {},
        )

    @property
    def is_running(self) -> bool:
        return self.state == TASK_RUNNING

    @property
    def ports(self) -> str | None:
        """Raw port-range string, if the task holds any ports.
        """
        return self.resources.get('ports')


@dataclass
class Framework:
    id: str
    name: str = ''
    tasks: list[Task] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict) -> 'Framework':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            tasks=[Task.from_json(t) for t in data.get('tasks') or []],
        )


@dataclass
class Follower:
    """A Mesos agent that executes tasks.
    """
    id: str
    hostname: str = ''
    pid: str = ''

    @classmethod
    def from_json(cls, data: dict) -> 'Follower':
        return cls(id=data['id'], hostname=data.get('hostname', ''), pid=data.get('pid', ''))

    @property
    def address(self) -> str:
        """IP from the agent pid, falling back to its hostname.
        """
        if self.pid:
            try:
                return parse_address(self.pid)[0]
            except ParseError:
                logger.debug(f'Unparseable pid {self.pid!r} for follower {self.id}')
        return self.hostname

    @property
    def port(self) -> int | None:
        if not self.pid:
            return None
        try:
            return parse_address(self.pid)[1]
        except ParseError:
            return None


@dataclass
class StateDocument:
    """Snapshot of cluster-manager state at fetch time.
    """
    leader: str
    frameworks: list[Framework] = field(default_factory=list)
    followers: list[Follower] = field(default_factory=list)

    def __post_init__(self):
        self._followers_by_id = {f.id: f for f in self.followers}

    @classmethod
    def from_json(cls, data: dict) -> 'StateDocument':
        """Build a document from the decoded `state.json` body.

        Raises
            ParseError: If the body is not a state document
        """
        if not isinstance(data, dict):
            raise ParseError(f'State document must be an object, got {type(data).__name__}')
        try:
            return cls(
                leader=data.get('leader') or '',
                frameworks=[Framework.from_json(f) for f in data.get('frameworks') or []],
                followers=[Follower.from_json(s) for s in data.get('slaves') or data.get('agents') or []],
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ParseError(f'Malformed state document: {e!r}') from e

    def follower(self, follower_id: str) -> Follower | None:
        return self._followers_by_id.get(follower_id)

    def leader_address(self) -> tuple[str, int | None]:
        return parse_address(self.leader)


@dataclass(frozen=True)
class RegistrationEntry:
    """What the registry holds for one service.
    """
    id: str
    name: str
    address: str
    ports: tuple[int, ...] = ()
    tags: tuple[str, ...] = ()

    def to_row(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'ports': json.dumps(list(self.ports)),
            'tags': json.dumps(list(self.tags)),
        }

    @classmethod
    def from_row(cls, row) -> 'RegistrationEntry':
        return cls(
            id=row['id'],
            name=row['name'],
            address=row['address'],
            ports=tuple(json.loads(row['ports'])),
            tags=tuple(json.loads(row['tags'])),
        )


@dataclass
class CacheEntry:
    registration: RegistrationEntry
    is_registered: bool = False
    touched: bool = False


# ============================================================
# SERVICE LAYER
# ============================================================

class DatabaseContext:
    """Manages database engine, connections, and table names.
    """

    def __init__(self, config: MirrorConfig):
        """Initialize database context.

        Args:
            config: Mirror configuration with connection parameters
        """
        connection_string = config.connection_string or build_connection_string(
            config.host, config.port, config.dbname, config.user, config.password)
        if connection_string.startswith('sqlite'):
            self.engine = create_engine(connection_string)
        else:
            self.engine = create_engine(connection_string, pool_pre_ping=True, pool_size=5, max_overflow=5)
        self.appname = config.appname
        self.tables = get_table_names(config.appname)

    def query(self, sql: str, params: dict = None) -> list:
        """Execute query and return all rows.
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            return list(result)

    def dispose(self) -> None:
        """Dispose of engine resources.
        """
        self.engine.dispose()


class LeaderLocator:
    """Tracks known Mesos masters and which one leads.

    Written to only from membership notifications; read by refresh cycles.
    The lock is held for the read or write of the candidate list only.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._candidates: list[Host] = []
        self._leader: Host | None = None

    def current_leader(self) -> Host | None:
        """Most recently known leader, or None before the first notification.
        """
        with self._lock:
            return self._leader

    def candidates(self) -> list[Host]:
        with self._lock:
            return list(self._candidates)

    def on_membership_changed(self, hosts) -> None:
        """Replace the candidate set; the first host in order is the leader.

        An empty update keeps the last known leader, since it usually means
        the watch lost sight of the masters rather than that none exist.
        """
        hosts = list(dict.fromkeys(hosts))
        if not hosts:
            logger.warning(f'Membership update without masters, keeping leader {self.current_leader()}')
            return

        with self._lock:
            previous = self._leader
            self._candidates = hosts
            self._leader = hosts[0]

        if previous != hosts[0]:
            logger.info(f'Leader changed: {previous} -> {hosts[0]} ({len(hosts)} candidates)')
        else:
            logger.debug(f'Membership updated: {[str(h) for h in hosts]}')

    def on_connection_lost(self) -> None:
        logger.warning(f'Coordination connection lost, serving stale leader {self.current_leader()}')


class StateFetcher:
    """Loads the state document from the current leader.
    """

    def __init__(self, locator: LeaderLocator, config: MirrorConfig, session: requests.Session = None):
        """Initialize state fetcher.

        Args:
            locator: Source of the current leader
            config: Mirror configuration (endpoint path and HTTP timeout)
            session: Optional requests session, mainly for tests
        """
        self.locator = locator
        self.state_endpoint = config.state_endpoint
        self.timeout = config.http_timeout_sec
        self.session = session or requests.Session()

    def fetch(self) -> StateDocument:
        """Load the state document, following one leader redirect at most.

        Raises
            NoLeaderError: If the locator knows no leader yet
            FetchError: If the document cannot be loaded or reports no leader
        """
        leader = self.locator.current_leader()
        if leader is None:
            raise NoLeaderError('No master known to the coordination service')

        logger.info(f'Reloading state from master {leader}')
        document = self.fetch_from(leader.ip, leader.port)

        try:
            ip, port = document.leader_address()
        except ParseError as e:
            raise FetchError(f'Unusable leader {document.leader!r} reported by {leader}') from e
        reported = Host(ip, port or leader.port)
        if reported != leader:
            logger.warning(f'Master changed to {reported}')
            document = self.fetch_from(reported.ip, reported.port)

        return document

    def fetch_from(self, ip: str, port: int) -> StateDocument:
        """Load and decode the state document from one master.
        """
        url = f'http://{ip}:{port}{self.state_endpoint}'
        try:
            response = self.session.get(url, headers={'Accept': 'application/json'}, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise FetchError(f'Cannot load state from {url}: {e}') from e

        try:
            document = StateDocument.from_json(data)
        except ParseError as e:
            raise FetchError(f'Cannot decode state from {url}: {e}') from e

        if not document.leader:
            raise EmptyLeaderError(f'{url} reported no leader')
        return document


class RegistrationCache:
    """Last registration sent per service id, and whether it landed.
    """

    def __init__(self):
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, service_id: str) -> bool:
        return service_id in self._entries

    def get(self, service_id: str) -> CacheEntry | None:
        return self._entries.get(service_id)

    def registrations(self) -> list[RegistrationEntry]:
        with self._lock:
            return [e.registration for e in self._entries.values() if e.is_registered]

    def upsert(self, entry: RegistrationEntry, registry) -> str:
        """Register the entry unless the registry already holds it unchanged.

        The registry call runs outside the cache lock.

        Returns
            One of 'registered', 'updated', 'unchanged', 'failed'
        """
        with self._lock:
            cached = self._entries.get(entry.id)
            if cached is not None and cached.is_registered and cached.registration == entry:
                cached.touched = True
                return 'unchanged'

            action = 'updated' if cached is not None and cached.is_registered else 'registered'
            cached = CacheEntry(entry, is_registered=False, touched=True)
            self._entries[entry.id] = cached

        try:
            registry.register(entry)
        except RegistryError as e:
            logger.warning(f'Registration of {entry.id} failed, retrying next cycle: {e}')
            return 'failed'

        with self._lock:
            if self._entries.get(entry.id) is cached:
                cached.is_registered = True

        logger.debug(f'{action.capitalize()} {entry.id} at {entry.address} ports={list(entry.ports)}')
        return action

    def sweep_stale(self) -> list[str]:
        """Drop entries not touched since the last sweep and return their ids.
        """
        with self._lock:
            stale = [sid for sid, e in self._entries.items() if not e.touched]
            for sid in stale:
                del self._entries[sid]
            for e in self._entries.values():
                e.touched = False
        return stale

    def load(self, registry) -> int:
        """Seed the cache from the registry's durable copy, if it keeps one.

        Loaded entries count as registered but untouched, so the first sweep
        removes whatever is no longer running.
        """
        if not registry.cache_supported():
            return 0
        try:
            entries = registry.load_cache()
        except RegistryError as e:
            logger.warning(f'Could not load registration cache, starting empty: {e}')
            return 0
        with self._lock:
            for entry in entries:
                self._entries[entry.id] = CacheEntry(entry, is_registered=True)
        logger.info(f'Loaded {len(entries)} cached registrations')
        return len(entries)

    def persist(self, registry) -> bool:
        if not registry.cache_supported():
            return False
        try:
            registry.persist_cache(self.registrations())
        except RegistryError as e:
            logger.warning(f'Could not persist registration cache: {e}')
            return False
        return True


class Reconciler:
    """Turns a state document into registry calls.

    Sole owner of the registration cache.
    """

    def __init__(self, registry, cache: RegistrationCache = None,
                 service_prefix: str = 'mesos', register_hosts: bool = False):
        """Initialize reconciler.

        Args:
            registry: Registry implementation receiving register/deregister calls
            cache: Registration cache (a fresh one if omitted)
            service_prefix: Prefix of every service id this mirror owns
            register_hosts: Also register the leader and agents as `mesos` services
        """
        self.registry = registry
        self.cache = cache if cache is not None else RegistrationCache()
        self.service_prefix = service_prefix
        self.register_hosts = register_hosts
        self._pending_deregister: set[str] = set()

    def build_entry(self, framework: Framework, task: Task, follower: Follower) -> RegistrationEntry:
        """Registration for a running task.

        Raises
            ParseError: If the task's port resource is malformed
        """
        ports = decode_ports(task.ports) if task.ports else []
        return RegistrationEntry(
            id=service_id(self.service_prefix, framework.id, task.id),
            name=service_name(task.name) or service_name(task.id),
            address=follower.address,
            ports=tuple(ports),
            tags=tuple(t for t in (self.service_prefix, framework.name) if t),
        )

    def build_host_entries(self, document: StateDocument) -> list[RegistrationEntry]:
        entries = []
        leader_ip, leader_port = document.leader_address()
        entries.append(RegistrationEntry(
            id=service_id(self.service_prefix, 'leader', f'{leader_ip}:{leader_port}'),
            name='mesos',
            address=leader_ip,
            ports=(leader_port,) if leader_port else (),
            tags=('leader', 'master'),
        ))
        for follower in document.followers:
            entries.append(RegistrationEntry(
                id=service_id(self.service_prefix, 'follower', follower.id),
                name='mesos',
                address=follower.address,
                ports=(follower.port,) if follower.port else (),
                tags=('follower',),
            ))
        return entries

    def reconcile(self, document: StateDocument) -> dict:
        """Register running tasks, then deregister what disappeared.

        Returns
            Counts per action for this cycle
        """
        summary = dict.fromkeys(('registered', 'updated', 'unchanged', 'failed', 'skipped', 'deregistered'), 0)

        for framework in document.frameworks:
            for task in framework.tasks:
                if not task.is_running:
                    continue
                follower = document.follower(task.follower_id)
                if follower is None:
                    logger.debug(f'Task {task.id} runs on unknown follower {task.follower_id}, skipping')
                    summary['skipped'] += 1
                    continue
                try:
                    entry = self.build_entry(framework, task, follower)
                except ParseError as e:
                    logger.warning(f'Skipping task {task.id}: {e}')
                    summary['skipped'] += 1
                    continue
                summary[self.cache.upsert(entry, self.registry)] += 1

        if self.register_hosts:
            try:
                host_entries = self.build_host_entries(document)
            except ParseError as e:
                logger.warning(f'Skipping host registration: {e}')
                host_entries = []
            for entry in host_entries:
                summary[self.cache.upsert(entry, self.registry)] += 1

        summary['deregistered'] = self.deregister(self.cache.sweep_stale())
        self.cache.persist(self.registry)

        logger.info(f'Reconciled: {summary}')
        return summary

    def deregister(self, stale: list[str]) -> int:
        """Deregister stale ids plus any left over from a failed earlier attempt.

        Returns
            Number of ids deregistered
        """
        pending = sorted(sid for sid in self._pending_deregister | set(stale) if sid not in self.cache)
        if not pending:
            self._pending_deregister.clear()
            return 0

        try:
            self.registry.deregister(pending)
        except RegistryError as e:
            failed = set(e.ids) & set(pending) if e.ids else set(pending)
            logger.warning(f'Deregistration failed for {sorted(failed)}, retrying next cycle: {e}')
            self._pending_deregister = failed
            return len(pending) - len(failed)

        self._pending_deregister.clear()
        logger.info(f'Deregistered {len(pending)} services')
        return len(pending)

    @property
    def pending_deregistrations(self) -> list[str]:
        return sorted(self._pending_deregister)


# ============================================================
# MONITORS
# ============================================================

class Monitor:
    """Base class for background monitoring threads.
    """

    def __init__(self, name: str, interval: float, shutdown_event: threading.Event):
        """Initialize monitor.

        Args:
            name: Monitor name
            interval: Check interval in seconds
            shutdown_event: Event to signal shutdown
        """
        self.name = name
        self.interval = interval
        self.shutdown_event = shutdown_event
        self.thread = None

    def start(self) -> None:
        self.thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=self.name
        )
        self.thread.start()
        logger.info(f'{self.name} monitor started')

    def _run(self) -> None:
        while not self.shutdown_event.is_set():
            try:
                self.check()
            except Exception as e:
                logger.error(f'{self.name} monitor error: {e}', exc_info=True)
                if self.shutdown_event.wait(timeout=1.0):
                    break
                continue

            if self.shutdown_event.wait(timeout=self.interval):
                break

    def check(self) -> None:
        """Perform monitoring check - to be implemented by subclasses.
        """
        raise NotImplementedError


class MembershipMonitor(Monitor):
    """Feeds coordination-watch events into the leader locator.
    """

    def __init__(self, locator: LeaderLocator, event_queue: EventQueue,
                 interval: float, shutdown_event: threading.Event):
        super().__init__('membership', interval, shutdown_event)
        self.locator = locator
        self.event_queue = event_queue

    def check(self) -> None:
        for event in self.event_queue.consume_all():
            if event.type == 'membership_changed':
                self.locator.on_membership_changed(event.data.get('hosts', []))
            elif event.type == 'connection_lost':
                self.locator.on_connection_lost()
            else:
                logger.debug(f'Ignoring watch event {event.type}')


class RefreshMonitor(Monitor):
    """Runs a refresh cycle every `refresh_interval_sec`.
    """

    def __init__(self, mirror: 'Mirror'):
        super().__init__('refresh', mirror.config.refresh_interval_sec, mirror._shutdown_event)
        self.mirror = mirror

    def check(self) -> None:
        self.mirror.refresh()


# ============================================================
# MIRROR
# ============================================================

class Mirror:
    """Keeps a registry in line with the tasks Mesos reports as running.

    Usage:
        with Mirror(config, registry) as mirror:
            mirror.publish_membership([Host('10.0.0.1', 5050)])
            ...

    The coordination watch publishes into `mirror.events`; a membership
    monitor applies those events and a refresh monitor reconciles on a fixed
    interval. Refresh cycles never overlap.
    """

    def __init__(self, config: MirrorConfig, registry, session: requests.Session = None,
                 locator: LeaderLocator = None, cache: RegistrationCache = None):
        """Initialize the mirror.

        Args:
            config: Mirror configuration
            registry: Registry implementation
            session: Optional requests session used for state fetches
            locator: Optional leader locator (a fresh one if omitted)
            cache: Optional registration cache (a fresh one if omitted)
        """
        self.config = config
        self.registry = registry
        self.events = EventQueue()
        self.locator = locator or LeaderLocator()
        self.fetcher = StateFetcher(self.locator, config, session)
        self.cache = cache if cache is not None else RegistrationCache()
        self.reconciler = Reconciler(registry, self.cache, config.service_prefix, config.register_hosts)

        self.consecutive_failures = 0
        self.last_summary = None
        self._refresh_lock = threading.Lock()
        self._shutdown_event = threading.Event()
        self._monitors = {}

        self.cache.load(registry)

    def __enter__(self):
        logger.info(f'Starting mirror for {self.config.zk}')
        self._start_monitor('membership', MembershipMonitor(
            self.locator, self.events, self.config.membership_check_interval_sec, self._shutdown_event))
        self._start_monitor('refresh', RefreshMonitor(self))
        return self

    def __exit__(self, exc_ty, exc_val, tb):
        logger.debug('Exiting mirror context')
        if exc_ty:
            logger.error(exc_val)

        self._shutdown_event.set()
        for name, monitor in self._monitors.items():
            if monitor.thread and monitor.thread.is_alive():
                logger.debug(f'Joining {name} thread...')
                monitor.thread.join(timeout=10)
                if monitor.thread.is_alive():
                    logger.warning(f'{name} thread did not stop within timeout')
        self._monitors.clear()
        self.fetcher.session.close()

    def _start_monitor(self, name: str, monitor: Monitor) -> None:
        if name in self._monitors and self._monitors[name].thread and self._monitors[name].thread.is_alive():
            logger.debug(f'{name} monitor already running')
            return
        self._monitors[name] = monitor
        monitor.start()

    def publish_membership(self, hosts) -> None:
        """Entry point for the coordination watch callback.
        """
        self.events.publish('membership_changed', {'hosts': list(hosts)})

    def publish_connection_lost(self) -> None:
        self.events.publish('connection_lost')

    def refresh(self) -> bool:
        """Run one fetch and reconcile cycle.

        A failed fetch aborts the cycle before any registry call, leaving the
        cache as it was. A cycle that would overlap a running one is skipped.

        Returns
            True if the cycle reconciled a fresh state document
        """
        if not self._refresh_lock.acquire(blocking=False):
            logger.warning('Refresh already in progress, skipping cycle')
            return False
        try:
            try:
                document = self.fetcher.fetch()
            except NoLeaderError as e:
                self.consecutive_failures += 1
                logger.info(f'{e}, retrying next cycle')
                return False
            except FetchError as e:
                self.consecutive_failures += 1
                logger.error(f'Refresh failed ({self.consecutive_failures} in a row): {e}')
                return False

            self.last_summary = self._reconcile(document)
            self.consecutive_failures = 0
            return True
        finally:
            self._refresh_lock.release()

    @log_duration('reconcile')
    def _reconcile(self, document: StateDocument) -> dict:
        return self.reconciler.reconcile(document)

    def status(self) -> dict:
        leader = self.locator.current_leader()
        return {
            'leader': str(leader) if leader else None,
            'candidates': [str(h) for h in self.locator.candidates()],
            'cached_services': len(self.cache),
            'pending_deregistrations': self.reconciler.pending_deregistrations,
            'consecutive_failures': self.consecutive_failures,
            'last_summary': self.last_summary,
        }
