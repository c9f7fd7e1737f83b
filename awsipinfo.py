#!/usr/bin/env python3
"""
AWS IP range lookup tool using the published ip-ranges.json document.

Resolves an IP address or hostname and reports, for every resulting address,
which AWS prefixes contain it (region, services, network border group).

Outputs:
  - table (default): compact aligned columns
  - json: JSON array
  - jsonl: newline-delimited JSON
  - csv: CSV with fixed columns

Exit status is 0 when at least one address is inside an AWS range, 1 otherwise.
"""

from __future__ import annotations

import argparse
import csv
import ipaddress
import json
import logging
import socket
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, TextIO, Tuple, Union

import requests


AWS_IP_RANGES_URL = "https://ip-ranges.amazonaws.com/ip-ranges.json"

PLACEHOLDER = "-"

TABLE_HEADERS: Sequence[str] = ("IP", "PREFIX", "REGION", "SERVICE", "BORDER GROUP")

CSV_FIELDS: Sequence[str] = (
    "ip",
    "prefix",
    "region",
    "service",
    "network_border_group",
)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

log = logging.getLogger(__name__)


class AwsIpInfoError(Exception):
    """Base class for every failure reported by the CLI."""


class UsageError(AwsIpInfoError):
    pass


class FetchError(AwsIpInfoError):
    """The range document could not be retrieved."""


class ParseError(AwsIpInfoError):
    """The range document is not JSON or does not have the expected shape."""


class ResolutionError(AwsIpInfoError):
    pass


class NoAddressError(AwsIpInfoError):
    """Resolution succeeded but produced no addresses."""


class NoMatchError(AwsIpInfoError):
    """Every address was checked and none is inside an AWS range."""


@dataclass(frozen=True)
class RangeEntry:
    prefix: str
    region: str
    service: str
    network_border_group: str


@dataclass(frozen=True)
class IpRanges:
    """Snapshot of ip-ranges.json for a single run."""
    sync_token: str
    create_date: str
    prefixes: Tuple[RangeEntry, ...] = ()
    ipv6_prefixes: Tuple[RangeEntry, ...] = ()

    def entries_for(self, address: IPAddress) -> Tuple[RangeEntry, ...]:
        if address.version == 4:
            return self.prefixes
        return self.ipv6_prefixes


@dataclass(frozen=True)
class Match:
    address: IPAddress
    entry: RangeEntry


@dataclass(frozen=True)
class GroupedMatch:
    prefix: str
    region: str
    services: Tuple[str, ...]
    network_border_group: str

    @property
    def services_text(self) -> str:
        return ",".join(self.services)


@dataclass
class ReportRow:
    """One output line; group is None for an address without matches."""
    ip: str
    group: Optional[GroupedMatch] = None

    @property
    def matched(self) -> bool:
        return self.group is not None

    def cells(self) -> List[str]:
        g = self.group
        if g is None:
            return [self.ip, PLACEHOLDER, PLACEHOLDER, PLACEHOLDER, PLACEHOLDER]
        return [self.ip, g.prefix, g.region, g.services_text, g.network_border_group]

    def to_dict(self) -> dict:
        g = self.group
        return {
            "ip": self.ip,
            "prefix": g.prefix if g else None,
            "region": g.region if g else None,
            "services": list(g.services) if g else [],
            "service": g.services_text if g else None,
            "network_border_group": g.network_border_group if g else None,
            "matched": self.matched,
        }


# Range document

def _string_field(obj: Dict[str, Any], key: str, where: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ParseError(f"{where}: field {key!r} must be a string, got {type(value).__name__}")
    return value


def _parse_entries(payload: Dict[str, Any], list_key: str, prefix_key: str) -> Tuple[RangeEntry, ...]:
    items = payload.get(list_key)
    if items is None:
        return ()
    if not isinstance(items, list):
        raise ParseError(f"field {list_key!r} must be an array, got {type(items).__name__}")

    entries: List[RangeEntry] = []
    for idx, item in enumerate(items):
        where = f"{list_key}[{idx}]"
        if not isinstance(item, dict):
            raise ParseError(f"{where}: expected an object, got {type(item).__name__}")
        entries.append(
            RangeEntry(
                prefix=_string_field(item, prefix_key, where),
                region=_string_field(item, "region", where),
                service=_string_field(item, "service", where),
                network_border_group=_string_field(item, "network_border_group", where),
            )
        )
    return tuple(entries)


def parse_ip_ranges(payload: Any) -> IpRanges:
    """Build an IpRanges from the decoded ip-ranges.json payload."""
    if not isinstance(payload, dict):
        raise ParseError(f"expected a JSON object at top level, got {type(payload).__name__}")

    return IpRanges(
        sync_token=_string_field(payload, "syncToken", "document"),
        create_date=_string_field(payload, "createDate", "document"),
        prefixes=_parse_entries(payload, "prefixes", "ip_prefix"),
        ipv6_prefixes=_parse_entries(payload, "ipv6_prefixes", "ipv6_prefix"),
    )


def fetch_ip_ranges(url: str = AWS_IP_RANGES_URL) -> IpRanges:
    """
    Download and parse the published AWS IP ranges.

    Raises FetchError for transport failures and non-200 responses, and
    ParseError when the body is not a valid range document.
    """
    log.info("Fetching AWS IP ranges from %s", url)
    try:
        response = requests.get(url)
    except requests.RequestException as e:
        raise FetchError(str(e)) from e

    if response.status_code != requests.codes.ok:
        raise FetchError(f"HTTP {response.status_code}: {response.status_code} {response.reason}")

    try:
        payload = response.json()
    except ValueError as e:
        raise ParseError(f"invalid JSON: {e}") from e

    ranges = parse_ip_ranges(payload)
    log.info(
        "Loaded %d IPv4 and %d IPv6 prefixes (syncToken=%s, createDate=%s)",
        len(ranges.prefixes),
        len(ranges.ipv6_prefixes),
        ranges.sync_token,
        ranges.create_date,
    )
    return ranges


# Address resolution

def _normalize_address(address: IPAddress) -> IPAddress:
    if address.version == 6:
        mapped = address.ipv4_mapped
        if mapped is not None:
            return mapped
        # scope ids ("fe80::1%eth0") are not part of the address for matching
        if getattr(address, "scope_id", None):
            return ipaddress.IPv6Address(str(address).split("%", 1)[0])
    return address


def parse_ip_literal(value: str) -> Optional[IPAddress]:
    try:
        return _normalize_address(ipaddress.ip_address(value))
    except ValueError:
        return None


def resolve_addresses(value: str) -> List[IPAddress]:
    """
    Turn a CLI target into concrete addresses.

    A literal IPv4/IPv6 address is returned without touching DNS.
    Anything else is looked up with getaddrinfo; all records are returned in
    resolver order with duplicates removed. An empty list is a valid result.
    """
    literal = parse_ip_literal(value)
    if literal is not None:
        return [literal]

    log.info("Resolving %s", value)
    try:
        infos = socket.getaddrinfo(value, None)
    except (OSError, UnicodeError) as e:
        raise ResolutionError(str(e)) from e

    seen = set()
    addresses: List[IPAddress] = []
    for family, _type, _proto, _canonname, sockaddr in infos:
        if family not in (socket.AF_INET, socket.AF_INET6):
            continue
        address = parse_ip_literal(str(sockaddr[0]))
        if address is None or address in seen:
            continue
        seen.add(address)
        addresses.append(address)

    log.debug("%s resolved to %s", value, ", ".join(str(a) for a in addresses) or "(nothing)")
    return addresses


# Matching

def parse_prefix(text: str) -> Optional[IPNetwork]:
    """
    Parse "address/length" CIDR text; host bits are allowed.

    A bare address, surrounding whitespace or a netmask/hostmask suffix
    ("10.0.0.0/255.0.0.0") is not a CIDR and yields None.
    """
    addr, sep, bits = text.partition("/")
    if not sep or not addr or not (bits.isascii() and bits.isdigit()):
        return None
    try:
        return ipaddress.ip_network(text, strict=False)
    except ValueError:
        return None


def find_matches(address: IPAddress, ranges: IpRanges) -> List[Match]:
    matches: List[Match] = []
    skipped = 0

    for entry in ranges.entries_for(address):
        network = parse_prefix(entry.prefix)
        if network is None:
            skipped += 1
            log.debug("Skipping unparsable prefix %r (%s, %s)", entry.prefix, entry.service, entry.region)
            continue
        if address in network:
            matches.append(Match(address=address, entry=entry))

    if skipped:
        log.debug("Skipped %d unparsable IPv%d prefixes while checking %s", skipped, address.version, address)

    return matches


def group_matches(matches: Sequence[Match]) -> List[GroupedMatch]:
    """
    Collapse matches sharing (prefix, region, border group) into one row.

    Keys keep the position of their first occurrence; services are joined in
    encounter order and are not de-duplicated.
    """
    order: List[Tuple[str, str, str]] = []
    services: Dict[Tuple[str, str, str], List[str]] = {}

    for m in matches:
        key = (m.entry.prefix, m.entry.region, m.entry.network_border_group)
        if key not in services:
            order.append(key)
            services[key] = []
        services[key].append(m.entry.service)

    return [
        GroupedMatch(
            prefix=prefix,
            region=region,
            services=tuple(services[(prefix, region, border_group)]),
            network_border_group=border_group,
        )
        for prefix, region, border_group in order
    ]


def build_report(addresses: Sequence[IPAddress], ranges: IpRanges) -> Tuple[List[ReportRow], bool]:
    """Return the output rows for all addresses and whether any address matched."""
    rows: List[ReportRow] = []
    found = False

    for address in addresses:
        grouped = group_matches(find_matches(address, ranges))
        if not grouped:
            rows.append(ReportRow(ip=str(address)))
            continue

        found = True
        rows.extend(ReportRow(ip=str(address), group=g) for g in grouped)

    return rows, found


# Rendering

def open_output(path: Optional[Path]) -> TextIO:
    if path is None or str(path) == "-":
        return sys.stdout
    return path.open("w", encoding="utf-8", newline="")


def render_table(rows: Sequence[ReportRow], out: TextIO, header: bool = True) -> None:
    table = [r.cells() for r in rows]

    widths = [len(h) for h in TABLE_HEADERS] if header else [0] * len(TABLE_HEADERS)
    for row in table:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    def fmt_row(values: Sequence[str]) -> str:
        return "  ".join(values[i].ljust(widths[i]) for i in range(len(values))).rstrip()

    if header:
        out.write(fmt_row(TABLE_HEADERS) + "\n")

    for row in table:
        out.write(fmt_row(row) + "\n")


def render_json(rows: Sequence[ReportRow], out: TextIO, pretty: bool) -> None:
    payload = [r.to_dict() for r in rows]
    if pretty:
        json.dump(payload, out, indent=2, sort_keys=True)
        out.write("\n")
    else:
        json.dump(payload, out, separators=(",", ":"), sort_keys=True)
        out.write("\n")


def render_jsonl(rows: Sequence[ReportRow], out: TextIO) -> None:
    for r in rows:
        out.write(json.dumps(r.to_dict(), sort_keys=True, separators=(",", ":")) + "\n")


def render_csv(rows: Sequence[ReportRow], out: TextIO, header: bool = True) -> None:
    writer = csv.writer(out)
    if header:
        writer.writerow(CSV_FIELDS)

    for r in rows:
        writer.writerow(r.cells())


# CLI

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Check whether an IP address or hostname belongs to a published AWS IP range.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Look up a single IP
  %(prog)s 3.4.12.4

  # Resolve a hostname and check every address it points to
  %(prog)s status.aws.amazon.com

  # Machine-readable output
  %(prog)s s3.amazonaws.com --format json
""",
    )

    parser.add_argument("target", nargs="?", help="IP address or hostname to look up")

    output_group = parser.add_argument_group("output options")
    output_group.add_argument(
        "--format",
        choices=("table", "json", "jsonl", "csv"),
        default="table",
        help="Output format (default: table)",
    )
    output_group.add_argument(
        "-o",
        "--output",
        type=Path,
        help="Write output to file (default: stdout). Use '-' for stdout.",
    )
    output_group.add_argument(
        "--no-header",
        action="store_true",
        help="Do not print header row (csv/table)",
    )
    output_group.add_argument(
        "--compact-json",
        action="store_true",
        help="For --format json, do not pretty-print",
    )
    output_group.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log progress to stderr (-vv for debug details such as skipped prefixes)",
    )
    output_group.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only log errors",
    )

    return parser


def configure_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(level=level, format="%(levelname)s: %(message)s", stream=sys.stderr)


def write_report(rows: Sequence[ReportRow], args: argparse.Namespace) -> None:
    out = open_output(args.output)
    try:
        header = not args.no_header

        if args.format == "table":
            render_table(rows, out=out, header=header)
        elif args.format == "json":
            render_json(rows, out=out, pretty=(not args.compact_json))
        elif args.format == "jsonl":
            render_jsonl(rows, out=out)
        elif args.format == "csv":
            render_csv(rows, out=out, header=header)
    finally:
        if out is not sys.stdout:
            out.close()
        else:
            out.flush()


def run(target: str, args: argparse.Namespace) -> None:
    """
    Fetch, resolve, match and print for one target.

    Raises an AwsIpInfoError subclass for every unsuccessful outcome;
    NoMatchError is raised only after the report has been written.
    """
    try:
        ranges = fetch_ip_ranges()
    except FetchError as e:
        raise FetchError(f"error fetching AWS IP ranges: {e}") from e
    except ParseError as e:
        raise ParseError(f"error parsing AWS IP ranges: {e}") from e

    try:
        addresses = resolve_addresses(target)
    except ResolutionError as e:
        raise ResolutionError(f"error resolving {target}: {e}") from e

    if not addresses:
        raise NoAddressError(f"no IP addresses found for {target}")

    rows, found = build_report(addresses, ranges)
    write_report(rows, args)

    if not found:
        raise NoMatchError(f"{target} is not in any AWS IP range")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        if args.target is None or not args.target.strip():
            raise UsageError("an IP address or hostname is required")
        run(args.target, args)
    except UsageError as e:
        parser.print_usage(sys.stderr)
        print(f"error: {e}", file=sys.stderr)
        return 1
    except AwsIpInfoError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"error: cannot write output: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
