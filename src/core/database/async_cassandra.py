"""Async Cassandra connection using cassandra-asyncio-driver.

Provides:
- One cluster/session per process with ``session.aexecute()``
- Keyspace and tracking table bootstrap at startup

Services prepare their statements once against this session and await
``aexecute`` per request.
"""

import structlog
from cassandra.auth import PlainTextAuthProvider
from cassandra.policies import DCAwareRoundRobinPolicy, TokenAwarePolicy
from cassandra_asyncio.cluster import Cluster

from src.config.settings import Settings, get_settings
from src.tracking.models import TRACKING_TABLES_CQL


logger = structlog.get_logger(__name__)


class AsyncCassandraConnection:
    """Process-wide Cassandra cluster and session holder."""

    _cluster: Cluster | None = None
    _session = None  # Session type from cassandra_asyncio

    @classmethod
    def connect(cls, settings: Settings | None = None):
        """Connect to the cluster (synchronous) and return the session.

        Raises:
            ConnectionError: If no contact point is reachable
        """
        if cls._session is not None:
            return cls._session

        settings = settings or get_settings()

        auth_provider = None
        if settings.cassandra_username and settings.cassandra_password:
            auth_provider = PlainTextAuthProvider(
                username=settings.cassandra_username,
                password=settings.cassandra_password,
            )

        cls._cluster = Cluster(
            contact_points=settings.cassandra_hosts,
            port=settings.cassandra_port,
            auth_provider=auth_provider,
            protocol_version=settings.cassandra_protocol_version,
            load_balancing_policy=TokenAwarePolicy(DCAwareRoundRobinPolicy()),
            connect_timeout=settings.cassandra_connect_timeout,
        )

        try:
            cls._session = cls._cluster.connect()
        except Exception as e:
            logger.error(
                "cassandra_connection_failed",
                hosts=settings.cassandra_hosts,
                error=str(e),
            )
            raise ConnectionError(f"Failed to connect to Cassandra: {e}") from e

        logger.info(
            "cassandra_connected",
            hosts=settings.cassandra_hosts,
            port=settings.cassandra_port,
        )
        return cls._session

    @classmethod
    def disconnect(cls) -> None:
        """Close session and cluster."""
        if cls._session is not None:
            cls._session.shutdown()
            cls._session = None
        if cls._cluster is not None:
            cls._cluster.shutdown()
            cls._cluster = None
        logger.info("cassandra_disconnected")

    @classmethod
    def is_connected(cls) -> bool:
        """Check if connection is active."""
        return cls._session is not None and not cls._session.is_shutdown


async def init_async_keyspace(session, keyspace: str) -> None:
    """Create keyspace if not exists (async).

    Args:
        session: Active Cassandra session with aexecute()
        keyspace: Keyspace name
    """
    settings = get_settings()

    # Replication strategy based on environment
    if settings.is_production:
        replication = "'class': 'NetworkTopologyStrategy', 'datacenter1': 3"
    else:
        replication = "'class': 'SimpleStrategy', 'replication_factor': 1"

    await session.aexecute(f"""
        CREATE KEYSPACE IF NOT EXISTS {keyspace}
        WITH replication = {{{replication}}}
        AND durable_writes = true
    """)
    logger.info("async_keyspace_created", keyspace=keyspace)


async def init_async_tracking_tables(session, keyspace: str) -> None:
    """Create viewing session, event, progress and alert tables (async)."""
    for cql_template in TRACKING_TABLES_CQL:
        await session.aexecute(cql_template.format(keyspace=keyspace))
    logger.info(
        "async_tracking_tables_created",
        keyspace=keyspace,
        statements=len(TRACKING_TABLES_CQL),
    )


async def init_async_cassandra():
    """Initialize async Cassandra connection and schema.

    Returns:
        Configured Cassandra session with aexecute() support
    """
    settings = get_settings()

    # Connect to cluster (sync connection, but session supports aexecute)
    session = AsyncCassandraConnection.connect()

    await init_async_keyspace(session, settings.cassandra_keyspace)
    session.set_keyspace(settings.cassandra_keyspace)
    await init_async_tracking_tables(session, settings.cassandra_keyspace)

    logger.info(
        "async_cassandra_initialized",
        keyspace=settings.cassandra_keyspace,
    )

    return session


async def shutdown_async_cassandra() -> None:
    """Shutdown async Cassandra connection."""
    AsyncCassandraConnection.disconnect()
