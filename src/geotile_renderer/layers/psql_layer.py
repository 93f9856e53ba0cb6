"""
PostgreSQL Layer

Renders WKB geometries returned by a PostGIS query. The query text is a
template; region dependent values are substituted before execution:

    SELECT ST_AsBinary(geom) AS wkb, name FROM roads WHERE {{clipping}}

Supported tokens are {{clipping}}, {{geometry-field}}, {{min-x}}, {{min-y}},
{{max-x}}, {{max-y}}, {{destination-srid}} and {{zoom}}.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import psycopg2
import structlog
from psycopg2.extras import RealDictCursor

from ..config import DatabaseConfig, LayerConfig
from ..errors import DatabaseConnectionError, GeometryDecodeError, QueryError
from ..geometry.wkb import decode_wkb_with_srid
from ..rendering.context import RenderContext
from .base import Feature, FeatureCallback, Layer

CLIPPING_SAME_SRID = (
    "ST_Intersects({{geometry-field}}, "
    "ST_MakeEnvelope({{min-x}}, {{min-y}}, {{max-x}}, {{max-y}}, {{destination-srid}}))"
)
CLIPPING_TRANSFORMED = (
    "ST_Intersects(ST_Transform({{geometry-field}}, {{destination-srid}}), "
    "ST_MakeEnvelope({{min-x}}, {{min-y}}, {{max-x}}, {{max-y}}, {{destination-srid}}))"
)


class PSQLConnectionRegistry:
    """
    Database connections shared by all PSQL layers of a run.

    Each identifier is connected at most once and reused across regions and
    worker threads. Connections run in autocommit mode, queries are read-only.

    Args:
        databases: Configured connections
        retry_count: Extra connection attempts after the first failure
        retry_backoff: Delay before the first retry, doubled for each further one
        connect: Connection factory, psycopg2.connect by default
    """

    def __init__(
        self,
        databases: Sequence[DatabaseConfig],
        retry_count: int = 2,
        retry_backoff: float = 0.5,
        connect: Callable[..., Any] = psycopg2.connect
    ):
        self.databases = list(databases)
        self.retry_count = retry_count
        self.retry_backoff = retry_backoff
        self._connect = connect
        self._connections: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.logger = structlog.get_logger(component="PSQLConnectionRegistry")

    def config_for(self, identifier: str) -> Optional[DatabaseConfig]:
        """The database with this identifier, or the first one if it is unknown."""
        for database in self.databases:
            if database.identifier == identifier:
                return database
        return self.databases[0] if self.databases else None

    def connection(self, identifier: str, layer: Optional[str] = None):
        """
        Get an open connection, connecting on first use.

        Raises:
            DatabaseConnectionError: If no database is configured or all
                connection attempts failed
        """
        database = self.config_for(identifier)
        if database is None:
            raise DatabaseConnectionError(
                f"Database connection missing, identifier: {identifier!r}",
                layer=layer
            )

        with self._lock:
            connection = self._connections.get(database.identifier)
            if connection is not None and not connection.closed:
                return connection

            connection = self._open(database, layer)
            self._connections[database.identifier] = connection
            return connection

    def _open(self, database: DatabaseConfig, layer: Optional[str]):
        attempt = 0
        while True:
            try:
                connection = self._connect(
                    dbname=database.db_name,
                    user=database.user,
                    password=database.password or None,
                    host=database.host or None,
                    port=database.port,
                    connect_timeout=database.timeout
                )
                connection.autocommit = True
                self.logger.info(
                    "Database connected",
                    identifier=database.identifier,
                    host=database.host,
                    db_name=database.db_name
                )
                return connection
            except psycopg2.Error as e:
                if attempt >= self.retry_count:
                    self.logger.error(
                        "Database connection failed",
                        identifier=database.identifier,
                        attempts=attempt + 1,
                        error=str(e)
                    )
                    raise DatabaseConnectionError(
                        f"Database connection failed, identifier: {database.identifier!r}: {e}",
                        layer=layer
                    ) from e

                delay = self.retry_backoff * (2 ** attempt)
                self.logger.warning(
                    "Database connection failed, retrying",
                    identifier=database.identifier,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(e)
                )
                time.sleep(delay)
                attempt += 1

    def close_all(self) -> None:
        with self._lock:
            for identifier, connection in self._connections.items():
                try:
                    connection.close()
                except psycopg2.Error as e:
                    self.logger.warning("Failed to close connection", identifier=identifier, error=str(e))
            self._connections.clear()


def _number(value: float) -> str:
    return format(float(value), ".17g")


class PSQLLayer(Layer):
    """
    Layer backed by a PostGIS query.

    The result must contain a `wkb` column. An SRID embedded in EWKB, or
    else an optional `srid` column, overrides the layer SRID per row; all
    other columns are passed to the layer script as attributes.
    """

    layer_type = "psql"

    def __init__(self, config: LayerConfig, connections: PSQLConnectionRegistry, script=None):
        super().__init__(config, script)
        self.connections = connections

    @classmethod
    def from_config(cls, config: LayerConfig, connections: Optional[PSQLConnectionRegistry] = None) -> "PSQLLayer":
        if connections is None:
            connections = PSQLConnectionRegistry([])
        return cls(config, connections)

    def build_query(self, context: RenderContext) -> str:
        """Substitute the region values into the query template."""
        sql = self.config.query
        if "{{" not in sql:
            return sql

        clipping = CLIPPING_SAME_SRID if self.srid == context.dst_srid else CLIPPING_TRANSFORMED
        min_x, min_y, max_x, max_y = context.dst_bounds

        sql = sql.replace("{{clipping}}", clipping)
        replacements = {
            "{{geometry-field}}": self.config.geometry_field,
            "{{min-x}}": _number(min_x),
            "{{min-y}}": _number(min_y),
            "{{max-x}}": _number(max_x),
            "{{max-y}}": _number(max_y),
            "{{destination-srid}}": str(context.dst_srid),
            "{{zoom}}": str(context.zoom),
        }
        for token, value in replacements.items():
            sql = sql.replace(token, value)
        return sql

    def fetch_rows(self, context: RenderContext) -> List[Dict[str, Any]]:
        """
        Execute the layer query for the region.

        Raises:
            DatabaseConnectionError: If no connection can be obtained
            QueryError: If the query fails or lacks the wkb column
        """
        sql = self.build_query(context)
        connection = self.connections.connection(self.config.psql_identifier, layer=self.name)

        try:
            with connection.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(sql)
                rows = cursor.fetchall()
        except psycopg2.Error as e:
            self.logger.error("Query failed", sql=sql, error=str(e))
            raise QueryError(f"Query failed: {e}", layer=self.name, sql=sql) from e

        if rows and "wkb" not in rows[0]:
            raise QueryError("Query result has no 'wkb' column", layer=self.name, sql=sql)
        return rows

    def for_each_overlapping_record(self, context: RenderContext, callback: FeatureCallback) -> None:
        stats = context.statistics.layer(self.name)

        start = time.perf_counter()
        try:
            rows = self.fetch_rows(context)
        finally:
            stats.data_access_time += time.perf_counter() - start
        stats.db_rows += len(rows)

        for row_index, row in enumerate(rows):
            start = time.perf_counter()
            try:
                wkb = row["wkb"]
                if wkb is None:
                    raise GeometryDecodeError("NULL geometry")
                record, wkb_srid = decode_wkb_with_srid(wkb)
            except GeometryDecodeError as e:
                e.layer = self.name
                self.record_feature_error(context, e, row_index)
                continue
            finally:
                stats.parse_time += time.perf_counter() - start

            srid = wkb_srid if wkb_srid is not None else row.get("srid")
            attributes = {key: value for key, value in row.items() if key != "wkb"}
            callback(Feature(
                record=record,
                srid=int(srid) if srid is not None else self.srid,
                attributes=attributes,
                row=row_index
            ))
