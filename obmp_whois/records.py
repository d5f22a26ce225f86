from dataclasses import MISSING, dataclass, fields
from datetime import datetime
from typing import Any, Mapping, Optional


@dataclass
class PrefixQuery:
    address: str
    bits: Optional[int] = None
    peer_filter: Optional[str] = None

    @property
    def network(self) -> str:
        if self.bits is None:
            return self.address
        return f"{self.address}/{self.bits}"


@dataclass
class PrefixRecord:
    """One enriched route from the lookup query, built per row and discarded."""

    router_name: str
    peer_name: str
    peer_addr: str
    prefix: str
    first_seen: datetime
    last_modified: datetime
    path_id: int
    labels: str
    origin_asn: int
    med: int
    local_pref: int
    next_hop: str
    as_path: str
    communities: str
    ext_communities: str
    large_communities: str
    cluster_list: str

    aggregator: Optional[str] = None

    city: Optional[str] = None
    state_prov: Optional[str] = None
    country: Optional[str] = None

    asn_name: Optional[str] = None
    asn_org_name: Optional[str] = None
    asn_org_id: Optional[str] = None
    asn_state_prov: Optional[str] = None
    asn_country: Optional[str] = None
    asn_source: Optional[str] = None

    rpki_origin_asn: Optional[int] = None

    irr_origin_asn: Optional[int] = None
    irr_descr: Optional[str] = None
    irr_source: Optional[str] = None

    ls_router: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PrefixRecord":
        """Builds a record from a result mapping keyed by field name.

        Raises ValueError when a required column is missing or NULL.
        """
        values = {}
        for f in fields(cls):
            value = row.get(f.name)
            if value is None and f.default is MISSING:
                raise ValueError(f"Required column '{f.name}' is NULL")
            values[f.name] = value
        return cls(**values)
