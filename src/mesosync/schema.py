import logging

from sqlalchemy import Engine, inspect, text

logger = logging.getLogger(__name__)


def get_table_names(appname: str = 'mesosync_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return {
        'Registration': f'{appname}registration',
    }


def verify_tables_exist(engine: Engine, appname: str = 'mesosync_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Returns
        Dictionary mapping table keys to existence status
    """
    tables = get_table_names(appname)
    inspector = inspect(engine)
    return {key: inspector.has_table(name) for key, name in tables.items()}


def _create_cache_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create the registration cache table.
    """
    Registration = tables['Registration']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Registration} (
    id varchar not null,
    name varchar not null,
    address varchar not null,
    ports varchar not null,
    tags varchar not null,
    updated_on varchar not null,
    primary key (id)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Registration}_name ON {Registration}(name)'))

        conn.commit()

    logger.debug(f'Cache tables verified: {Registration}')


def ensure_database_ready(engine: Engine, appname: str = 'mesosync_') -> None:
    """Ensure database has the registration cache table.

    Safe to call repeatedly - uses CREATE TABLE IF NOT EXISTS.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    tables = get_table_names(appname)

    table_status = verify_tables_exist(engine, appname)
    missing_tables = [k for k, exists in table_status.items() if not exists]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    try:
        _create_cache_tables(engine, tables)
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')
