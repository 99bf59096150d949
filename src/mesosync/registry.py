"""Registry backends the reconciler drives.
"""
import datetime
import logging

import requests
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from mesosync.client import DatabaseContext, MirrorConfig, RegistrationEntry
from mesosync.client import RegistryError, retry_with_backoff
from mesosync.schema import ensure_database_ready

logger = logging.getLogger(__name__)

__all__ = ['Registry', 'ConsulRegistry', 'DatabaseCacheStore', 'build_registry']


class Registry:
    """Interface of a service registry.

    `register` and `deregister` raise RegistryError on failure. Registries
    without a durable cache keep the defaults below.
    """

    def register(self, entry: RegistrationEntry) -> None:
        raise NotImplementedError

    def deregister(self, ids: list[str]) -> None:
        raise NotImplementedError

    def cache_supported(self) -> bool:
        return False

    def load_cache(self) -> list[RegistrationEntry]:
        return []

    def persist_cache(self, entries: list[RegistrationEntry]) -> None:
        pass


class DatabaseCacheStore:
    """Keeps the registration cache in a SQL table across restarts.
    """

    def __init__(self, db: DatabaseContext):
        self.db = db
        ensure_database_ready(db.engine, db.appname)
        self.table = db.tables['Registration']

    @retry_with_backoff(max_attempts=3, base_delay=0.5, operation_name='load_cache',
                        retry_on=(SQLAlchemyError,))
    def load(self) -> list[RegistrationEntry]:
        rows = self.db.query(f'SELECT id, name, address, ports, tags FROM {self.table} ORDER BY id')
        return [RegistrationEntry.from_row(row._mapping) for row in rows]

    @retry_with_backoff(max_attempts=3, base_delay=0.5, operation_name='persist_cache',
                        retry_on=(SQLAlchemyError,))
    def persist(self, entries: list[RegistrationEntry]) -> None:
        """Replace the stored snapshot with `entries` in one transaction.
        """
        updated_on = datetime.datetime.now(datetime.timezone.utc).isoformat()
        rows = [dict(e.to_row(), updated_on=updated_on) for e in entries]
        with self.db.engine.connect() as conn:
            conn.execute(text(f'DELETE FROM {self.table}'))
            if rows:
                conn.execute(text(f"""
                    INSERT INTO {self.table} (id, name, address, ports, tags, updated_on)
                    VALUES (:id, :name, :address, :ports, :tags, :updated_on)
                """), rows)
            conn.commit()
        logger.debug(f'Persisted {len(rows)} registrations to {self.table}')

    def dispose(self) -> None:
        self.db.dispose()


class ConsulRegistry(Registry):
    """Registers services with the local Consul agent.

    Consul holds one port per service, so a task with several ports becomes
    one Consul service per port, with ids `{entry.id}:{port}`.
    """

    def __init__(self, url: str = 'http://127.0.0.1:8500', token: str = '', timeout: int = 10,
                 store: DatabaseCacheStore = None, session: requests.Session = None):
        """Initialize Consul registry.

        Args:
            url: Consul agent base URL
            token: Optional ACL token
            timeout: HTTP timeout in seconds
            store: Optional durable cache store
            session: Optional requests session, mainly for tests
        """
        self.url = url.rstrip('/')
        self.timeout = timeout
        self.store = store
        self.session = session or requests.Session()
        if token:
            self.session.headers['X-Consul-Token'] = token
        self._services: dict[str, list[str]] = {}

    @staticmethod
    def consul_ids(entry: RegistrationEntry) -> list[str]:
        return [f'{entry.id}:{port}' for port in entry.ports] or [entry.id]

    def register(self, entry: RegistrationEntry) -> None:
        """Register one Consul service per port, then drop ports that went away.

        Every id the agent accepted is recorded before the next PUT, so a
        partly failed registration can still be fully deregistered.
        """
        ids = self.consul_ids(entry)
        known = self._services.setdefault(entry.id, [])
        for consul_id, port in zip(ids, entry.ports or [None]):
            payload = {
                'ID': consul_id,
                'Name': entry.name,
                'Address': entry.address,
                'Tags': list(entry.tags),
            }
            if port is not None:
                payload['Port'] = port
            self._put('/v1/agent/service/register', payload, entry.id)
            if consul_id not in known:
                known.append(consul_id)

        for consul_id in [i for i in known if i not in ids]:
            self._put(f'/v1/agent/service/deregister/{consul_id}', None, entry.id)
            known.remove(consul_id)

    def deregister(self, ids: list[str]) -> None:
        failed = []
        for sid in ids:
            remaining = self._services.setdefault(sid, [sid])
            try:
                for consul_id in list(remaining):
                    self._put(f'/v1/agent/service/deregister/{consul_id}', None, sid)
                    remaining.remove(consul_id)
            except RegistryError as e:
                logger.error(f'Deregistration of {sid} failed: {e}')
                failed.append(sid)
                continue
            del self._services[sid]
        if failed:
            raise RegistryError(f'Failed to deregister {len(failed)} of {len(ids)} services', failed)

    def _put(self, path: str, payload: dict | None, sid: str) -> None:
        url = f'{self.url}{path}'
        try:
            response = self.session.put(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise RegistryError(f'PUT {url} failed: {e}', [sid]) from e
        if response.status_code == 404 and '/deregister/' in path:
            logger.debug(f'{path} already gone from the agent')
            return
        if response.status_code != 200:
            raise RegistryError(f'PUT {url} returned {response.status_code}: {response.text}', [sid])

    def cache_supported(self) -> bool:
        return self.store is not None

    def load_cache(self) -> list[RegistrationEntry]:
        try:
            entries = self.store.load()
        except SQLAlchemyError as e:
            raise RegistryError(f'Cannot load cache: {e}') from e
        for entry in entries:
            self._services[entry.id] = self.consul_ids(entry)
        return entries

    def persist_cache(self, entries: list[RegistrationEntry]) -> None:
        try:
            self.store.persist(entries)
        except SQLAlchemyError as e:
            raise RegistryError(f'Cannot persist cache: {e}') from e


def build_registry(config: MirrorConfig) -> ConsulRegistry:
    """Consul registry for `config`, with a durable cache if enabled.
    """
    store = DatabaseCacheStore(DatabaseContext(config)) if config.cache_enabled else None
    return ConsulRegistry(config.consul_url, config.consul_token, config.http_timeout_sec, store=store)
