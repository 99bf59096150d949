import os
from types import SimpleNamespace

from mesosync.client import MirrorConfig

sync = SimpleNamespace(
    mesos=SimpleNamespace(
        zk=os.getenv('MESOSYNC_ZK', 'zk://127.0.0.1:2181/mesos'),
        master_port=int(os.getenv('MESOSYNC_MASTER_PORT', '5050')),
        state_endpoint=os.getenv('MESOSYNC_STATE_ENDPOINT', '/master/state.json'),
        refresh_interval_sec=int(os.getenv('MESOSYNC_REFRESH_INTERVAL', '60')),
        http_timeout_sec=int(os.getenv('MESOSYNC_HTTP_TIMEOUT', '10')),
        register_hosts=os.getenv('MESOSYNC_REGISTER_HOSTS', 'false').lower() == 'true',
        service_prefix=os.getenv('MESOSYNC_SERVICE_PREFIX', 'mesos'),
    ),
    consul=SimpleNamespace(
        url=os.getenv('MESOSYNC_CONSUL_URL', 'http://127.0.0.1:8500'),
        token=os.getenv('MESOSYNC_CONSUL_TOKEN', ''),
    ),
    sql=SimpleNamespace(
        enabled=os.getenv('MESOSYNC_CACHE_ENABLED', 'false').lower() == 'true',
        appname=os.getenv('MESOSYNC_SQL_APPNAME', 'mesosync_'),
        host=os.getenv('MESOSYNC_SQL_HOST', 'localhost'),
        dbname=os.getenv('MESOSYNC_SQL_DATABASE', 'mesosync'),
        user=os.getenv('MESOSYNC_SQL_USERNAME', 'postgres'),
        passwd=os.getenv('MESOSYNC_SQL_PASSWORD', 'postgres'),
        port=int(os.getenv('MESOSYNC_SQL_PORT', '5432')),
        url=os.getenv('MESOSYNC_SQL_URL'),
    ),
)


def load_config(settings: SimpleNamespace = None, **overrides) -> MirrorConfig:
    """Build a MirrorConfig from environment-derived settings.

    Args:
        settings: Namespace shaped like `sync` (defaults to the environment)
        **overrides: MirrorConfig fields that win over the settings
    """
    s = settings or sync
    values = {
        'zk': s.mesos.zk,
        'master_port': s.mesos.master_port,
        'state_endpoint': s.mesos.state_endpoint,
        'refresh_interval_sec': s.mesos.refresh_interval_sec,
        'http_timeout_sec': s.mesos.http_timeout_sec,
        'register_hosts': s.mesos.register_hosts,
        'service_prefix': s.mesos.service_prefix,
        'consul_url': s.consul.url,
        'consul_token': s.consul.token,
        'cache_enabled': s.sql.enabled,
        'appname': s.sql.appname,
        'host': s.sql.host,
        'dbname': s.sql.dbname,
        'user': s.sql.user,
        'password': s.sql.passwd,
        'port': s.sql.port,
        'connection_string': s.sql.url,
    }
    values.update(overrides)
    return MirrorConfig(**values)
