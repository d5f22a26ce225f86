import re
from dataclasses import dataclass
from enum import Enum, auto
from typing import ClassVar, Optional

# Canned responses
NO_PREFIXES_FOUND = "% No prefixes found.\r\n"
ERROR_OUT_OF_RESOURCES = "% ERROR: Out of resources, try again later.\r\n"
ERROR_INVALID_REQUEST = "% ERROR: Invalid request.\r\n"
ERROR_DB_CONNECT = "% ERROR: Cannot process request at this time\r\n"
ERROR_DB_QUERY = "% No entries found for prefix.\r\n"

HELP_USAGE = (
    "Usage: whois -h <server> -p <port> <command>\r\n"
    "\r\nCOMMAND:\r\n\r\n"
    "   ip[/bits] [peer like string] -- Lookup IPv4/IPv6 address or network\r\n"
    "                       Optionally add peer name prefix string (e.g., jfk01) to scope query to specific peer(s)\r\n"
)

HELP_RE = re.compile(r"help", re.IGNORECASE)
ASN_RE = re.compile(r"ASN?([0-9]+)", re.IGNORECASE)

# Optional peer filter after the first space
_FILTER = r"(?: (?P<filter>.+))?"
IPV4_RE = re.compile(
    r"(?P<address>[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3})(?:/(?P<bits>[0-9]{1,2}))?" + _FILTER
)
# Loose IPv6 validation, the store rejects anything it can't cast
IPV6_RE = re.compile(
    r"(?P<address>(?:[A-F0-9]{1,4}:{1,2})+(?:[A-F0-9]{1,4})?)(?:/(?P<bits>[0-9]{1,3}))?" + _FILTER,
    re.IGNORECASE,
)


class CommandKind(Enum):
    HELP = auto()
    ASN_LOOKUP = auto()
    PREFIX_LOOKUP = auto()
    INVALID = auto()


class Command:
    kind: ClassVar[CommandKind]


@dataclass
class HelpCommand(Command):
    kind: ClassVar[CommandKind] = CommandKind.HELP


@dataclass
class AsnLookupCommand(Command):
    """Recognized but not served; the connection is closed with no body."""

    kind: ClassVar[CommandKind] = CommandKind.ASN_LOOKUP
    asn: int


@dataclass
class PrefixLookupCommand(Command):
    kind: ClassVar[CommandKind] = CommandKind.PREFIX_LOOKUP
    address: str
    bits: Optional[int] = None
    peer_filter: Optional[str] = None


@dataclass
class InvalidCommand(Command):
    kind: ClassVar[CommandKind] = CommandKind.INVALID
    line: str = ""


def _prefix_command(match: "re.Match[str]") -> PrefixLookupCommand:
    bits = match.group("bits")
    peer_filter = match.group("filter")
    if peer_filter is not None:
        peer_filter = peer_filter.strip() or None
    return PrefixLookupCommand(
        address=match.group("address"),
        bits=int(bits) if bits else None,
        peer_filter=peer_filter,
    )


def parse_command(line: str) -> Command:
    """Classifies one request line; the first matching pattern wins."""
    if HELP_RE.fullmatch(line):
        return HelpCommand()

    match = ASN_RE.fullmatch(line)
    if match:
        return AsnLookupCommand(asn=int(match.group(1)))

    for pattern in (IPV4_RE, IPV6_RE):
        match = pattern.fullmatch(line)
        if match:
            return _prefix_command(match)

    return InvalidCommand(line)
