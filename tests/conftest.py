from datetime import datetime, timezone

import pytest

from obmp_whois.records import PrefixRecord


def build_record(**overrides) -> PrefixRecord:
    values = dict(
        router_name="bmp-rtr1",
        peer_name="X",
        peer_addr="198.51.100.1",
        prefix="192.0.2.0/24",
        first_seen=datetime(2022, 3, 1, 12, 0, 0, tzinfo=timezone.utc),
        last_modified=datetime(2022, 3, 2, 8, 30, 0, tzinfo=timezone.utc),
        path_id=0,
        labels="",
        origin_asn=64500,
        med=0,
        local_pref=100,
        next_hop="198.51.100.1",
        as_path="64501 64500",
        communities="64500:100",
        ext_communities="",
        large_communities="",
        cluster_list="",
    )
    values.update(overrides)
    return PrefixRecord(**values)


@pytest.fixture
def make_record():
    return build_record


class FakeStore:
    """Stands in for PrefixStore; returns canned records or raises."""

    def __init__(self, records=None, error=None):
        self.records = records or []
        self.error = error
        self.queries = []

    def lookup_prefixes(self, query):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return list(self.records)
