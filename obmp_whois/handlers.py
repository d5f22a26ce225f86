from typing import Iterable, Iterator, List, Optional, Protocol

from obmp_whois.formatter import fmt_result_item
from obmp_whois.protocol import ERROR_DB_CONNECT, ERROR_DB_QUERY, NO_PREFIXES_FOUND, PrefixLookupCommand
from obmp_whois.records import PrefixQuery, PrefixRecord
from obmp_whois.store import StoreQueryError, StoreUnavailableError
from obmp_whois.utils import setup_logging


class RecordSource(Protocol):
    def lookup_prefixes(self, query: PrefixQuery) -> List[PrefixRecord]: ...


def _text(value: Optional[str]) -> str:
    return value or ""


def dedup_adjacent(records: Iterable[PrefixRecord]) -> Iterator[PrefixRecord]:
    """Skips a record only when it repeats the (peer, prefix) of the one before it."""
    prev_key = None
    for record in records:
        key = (record.peer_name, record.prefix)
        if key == prev_key:
            continue
        prev_key = key
        yield record


def format_record(record: PrefixRecord) -> str:
    lines = [
        fmt_result_item("BMPRouter", record.router_name),
        fmt_result_item("Peer", f"{record.peer_name} [{record.peer_addr}]"),
        fmt_result_item("Prefix", record.prefix),
    ]

    if record.irr_descr:
        descr = record.irr_descr
        first_nl = descr.find("\n")
        if first_nl > 0:
            descr = descr[:first_nl]
        lines.append(fmt_result_item("PrefixDescr", f"{descr} ({_text(record.irr_source)})"))

    lines.append(fmt_result_item("PrefixCity", record.city))
    lines.append(fmt_result_item("PrefixStateProv", record.state_prov))
    lines.append(fmt_result_item("PrefixCountry", record.country))

    lines.append(fmt_result_item("FirstSeenTs", record.first_seen))
    lines.append(fmt_result_item("LastModifiedTs", record.last_modified))
    lines.append(fmt_result_item("LSRouter", record.ls_router))

    lines.append(fmt_result_item("OriginAsn", f"AS{record.origin_asn}"))

    if record.asn_name:
        as_info = f"{record.asn_name}, {_text(record.asn_org_id)}, {_text(record.asn_org_name)}"
        lines.append(fmt_result_item("AsnInfo", as_info))

    if record.asn_state_prov:
        lines.append(fmt_result_item("AsnLocation", f"{record.asn_state_prov}, {_text(record.asn_country)}"))
    else:
        lines.append(fmt_result_item("AsnLocation", record.asn_country))

    lines.append(fmt_result_item("BgpMed", record.med))
    lines.append(fmt_result_item("BgpLocalPref", record.local_pref))
    lines.append(fmt_result_item("BgpAsPath", record.as_path))
    lines.append(fmt_result_item("BgpNextHop", record.next_hop))
    lines.append(fmt_result_item("BgpCommunities", record.communities))
    lines.append(fmt_result_item("BgpExtCommunities", record.ext_communities))
    lines.append(fmt_result_item("BgpLargeCommunities", record.large_communities))
    lines.append(fmt_result_item("BgpClusterList", record.cluster_list))
    lines.append(fmt_result_item("BggAggregator", record.aggregator))
    lines.append(fmt_result_item("BgpLabels", record.labels))

    return "".join(lines) + "\n"


class PrefixHandler:
    def __init__(self, store: RecordSource):
        self.store = store
        self.logger = setup_logging("PrefixHandler")

    def process(self, command: PrefixLookupCommand, remote: str = "") -> bytes:
        query = PrefixQuery(address=command.address, bits=command.bits, peer_filter=command.peer_filter)
        self.logger.info(f"{remote}: requests lookup for IP {query.network}")
        if query.peer_filter:
            self.logger.debug(f"Peer name like '{query.peer_filter}' requested")

        try:
            records = self.store.lookup_prefixes(query)
        except StoreUnavailableError as e:
            self.logger.error(f"{remote}: Cannot connect to database: {e}")
            return ERROR_DB_CONNECT.encode()
        except StoreQueryError as e:
            self.logger.error(f"{remote}: Error running query: {e}")
            return ERROR_DB_QUERY.encode()

        blocks = [format_record(record) for record in dedup_adjacent(records)]
        self.logger.info(f"{remote}: done with lookup for IP {query.network}, {len(blocks)} records")

        if not blocks:
            return NO_PREFIXES_FOUND.encode()

        return ("".join(blocks) + "\r\n").encode()
