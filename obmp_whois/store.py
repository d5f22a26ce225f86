"""
Read-only access to the OpenBMP route tables.

Queries run on a pooled SQLAlchemy engine; every user supplied value is a
bound parameter. The engine is synchronous, callers on the event loop must
run lookups in an executor.
"""
from typing import Any, Dict, List, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.elements import TextClause

from obmp_whois.config import PostgresConfig
from obmp_whois.records import PrefixQuery, PrefixRecord
from obmp_whois.utils import setup_logging

MAX_RESULT_ROWS = 200

PEER_FILTER = "AND peer_hash_id IN (SELECT hash_id FROM bgp_peers WHERE name ILIKE :peer_like)"
CONTAINS_FILTER = "prefix && CAST(:network AS inet)"
EXACT_FILTER = "prefix = CAST(:network AS inet)"

# Format requires (prefix filter, peer filter)
PREFIX_QUERY = """
SELECT DISTINCT ip.*,
    FIRST_VALUE(geo_ip.city) OVER (PARTITION BY ip.prefix ORDER BY geo_ip.ip DESC) AS city,
    FIRST_VALUE(geo_ip.stateprov) OVER (PARTITION BY ip.prefix ORDER BY geo_ip.ip DESC) AS state_prov,
    FIRST_VALUE(geo_ip.country) OVER (PARTITION BY ip.prefix ORDER BY geo_ip.ip DESC) AS country,
    ia.as_name AS asn_name, ia.org_name AS asn_org_name, ia.org_id AS asn_org_id,
    ia.state_prov AS asn_state_prov, ia.country AS asn_country, ia.source AS asn_source,
    gr.rpki_origin_as AS rpki_origin_asn, gr.irr_origin_as AS irr_origin_asn,
    gr.irr_source AS irr_source, gr.irr_descr AS irr_descr,
    FIRST_VALUE(ls.local_router_name) OVER (PARTITION BY ip.prefix ORDER BY ls.prefix DESC) AS ls_router
FROM (
    SELECT firstaddedtimestamp AS first_seen, lastmodified AS last_modified,
        routername AS router_name, peername AS peer_name, peeraddress AS peer_addr, prefix,
        path_id, labels, origin_as AS origin_asn, med, localpref AS local_pref, nh AS next_hop,
        as_path, communities, extcommunities AS ext_communities,
        largecommunities AS large_communities, clusterlist AS cluster_list, aggregator
    FROM v_ip_routes
    WHERE {prefix_filter} AND iswithdrawn = False AND prefixlen > 0
        {peer_filter}
    ORDER BY prefix DESC
    LIMIT :max_rows
) ip
LEFT JOIN geo_ip ON (geo_ip.ip >>= ip.prefix AND geo_ip.ip != '0.0.0.0/0')
LEFT JOIN global_ip_rib gr ON (gr.prefix = ip.prefix)
LEFT JOIN info_asn ia ON (ia.asn = ip.origin_asn)
LEFT JOIN v_ls_prefixes ls ON (ls.prefix >>= ip.next_hop AND length(ls.local_router_name) > 0)
ORDER BY prefix DESC, peer_name
"""


class StoreError(Exception):
    pass


class StoreUnavailableError(StoreError):
    """No connection to the database could be obtained."""


class StoreQueryError(StoreError):
    """The query or the scan of its result rows failed."""


def build_prefix_query(query: PrefixQuery, exact: bool = False) -> Tuple[TextClause, Dict[str, Any]]:
    """Returns the lookup statement and its bound parameters.

    By default the target network is matched by containment in either
    direction. With ``exact`` and an explicit prefix length, only the route
    for exactly that network matches.
    """
    params: Dict[str, Any] = {"network": query.network, "max_rows": MAX_RESULT_ROWS}

    prefix_filter = CONTAINS_FILTER
    if exact and query.bits is not None:
        prefix_filter = EXACT_FILTER

    peer_filter = ""
    if query.peer_filter:
        peer_filter = PEER_FILTER
        params["peer_like"] = f"%{query.peer_filter}%"

    statement = text(PREFIX_QUERY.format(prefix_filter=prefix_filter, peer_filter=peer_filter))
    return statement, params


def create_store_engine(config: PostgresConfig, max_connections: int) -> Engine:
    """Creates the pooled engine; max open connections equal ``max_connections``."""
    url = URL.create(
        "postgresql+psycopg2",
        username=config.user or None,
        password=config.password or None,
        host=config.host,
        port=config.port,
        database=config.dbname or None,
    )
    pool_size = min(config.max_idle, max_connections)
    try:
        return create_engine(
            url,
            pool_size=pool_size,
            max_overflow=max_connections - pool_size,
            pool_recycle=config.pool_recycle,
            pool_pre_ping=True,
            connect_args={
                "sslmode": config.sslmode,
                "connect_timeout": config.connect_timeout,
                "application_name": config.application_name,
            },
        )
    except (SQLAlchemyError, ImportError) as e:
        raise StoreError(f"Cannot create database engine: {e}") from e


class PrefixStore:
    def __init__(self, engine: Engine, exact_prefix_match: bool = False):
        self.engine = engine
        self.exact_prefix_match = exact_prefix_match
        self.logger = setup_logging("PrefixStore")

    @classmethod
    def from_config(
        cls, config: PostgresConfig, max_connections: int, exact_prefix_match: bool = False
    ) -> "PrefixStore":
        return cls(create_store_engine(config, max_connections), exact_prefix_match)

    def lookup_prefixes(self, query: PrefixQuery) -> List[PrefixRecord]:
        """Runs the prefix lookup and scans every row into a PrefixRecord.

        Raises StoreUnavailableError when no connection can be checked out and
        StoreQueryError when execution or row scanning fails.
        """
        statement, params = build_prefix_query(query, exact=self.exact_prefix_match)
        self.logger.debug(f"Query params: {params}")

        try:
            conn = self.engine.connect()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e

        with conn:
            try:
                rows = conn.execute(statement, params).mappings().all()
            except SQLAlchemyError as e:
                raise StoreQueryError(str(e)) from e

        try:
            return [PrefixRecord.from_row(row) for row in rows]
        except (TypeError, ValueError) as e:
            raise StoreQueryError(f"Error processing query result: {e}") from e

    def close(self):
        self.engine.dispose()
