#!/usr/bin/env python3
"""CLI utilities for loading gateway logs and attributing web traffic.

The script provides the following commands:

``dhcp-table``
    Parse DHCP server logs (every ``*.log`` file in ``data/raw/dhcp``,
    excluding ``*.example.log``, unless files are given explicitly) and
    store the lease acknowledgements in the ``dhcp_logs`` table of
    ``data/interim/output.db`` with the columns::

        datetime,ip_addr,mac_addr

``http-table``
    Parse HTTP proxy logs from ``data/raw/http`` into the ``logs`` table.
    Each ``key="value"`` attribute becomes a TEXT column the first time the
    key is seen.

``correlate``
    Replay the DHCP lease history, then attribute every HTTP request to the
    device that held the client IP at that moment. Only devices whose name
    is listed in ``configs/friendly_names.yml`` are kept; the results go to
    the ``correlated_logs`` table together with ``mac_addr`` and
    ``device_name``.

``all``
    Run the three commands above in sequence.

Lines that cannot be parsed are reported on the console and copied to
``data/interim/failures.log``.
"""

from __future__ import annotations

import argparse
import sqlite3
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, TextIO, TypeVar

from leases import (
    DEFAULT_IP_ATTRIBUTE,
    CorrelationStats,
    LeaseHistory,
    correlate,
    load_allow_list,
)
from logline import LineParseError, parse_dhcp_line, parse_http_line
from storage import CORRELATED_TABLE, DHCP_TABLE, HTTP_TABLE, LogDatabase

CONSOLE_SEPARATOR = "--------------------------------------------"

LOG_SUFFIX = ".log"
EXAMPLE_SUFFIX = ".example.log"

T = TypeVar("T")


@dataclass
class LineStats:
    parsed: int = 0
    failed: int = 0


def iter_log_files(log_dir: Path) -> List[Path]:
    """Return the log files in *log_dir*.

    Files ending with ``.example.log`` are ignored. Results are returned in
    alphabetical order for consistent output.
    """

    if not log_dir.exists():
        return []

    return sorted(
        path
        for path in log_dir.glob(f"*{LOG_SUFFIX}")
        if not path.name.endswith(EXAMPLE_SUFFIX)
    )


def resolve_input_files(repo_root: Path, explicit: Iterable[str] | None, kind: str) -> List[Path]:
    if explicit:
        return [Path(value) for value in explicit]
    return iter_log_files(repo_root / "data" / "raw" / kind)


def display_path(path: Path, repo_root: Path) -> str:
    try:
        return path.resolve().relative_to(repo_root.resolve()).as_posix()
    except ValueError:
        return path.as_posix()


def resolve_output_path(repo_root: Path, args: argparse.Namespace | None) -> Path:
    output = getattr(args, "output", None)
    if output:
        return Path(output)
    return repo_root / "data" / "interim" / "output.db"


def read_log_lines(path: Path) -> Iterator[str]:
    """Yield the lines of *path* without their ``\\n`` terminator.

    Undecodable bytes are replaced rather than aborting the file.
    """

    with path.open("r", encoding="utf-8", errors="replace", newline="\n") as handle:
        for raw_line in handle:
            yield raw_line[:-1] if raw_line.endswith("\n") else raw_line


def iter_parsed_lines(
    path: Path,
    parse_line: Callable[[str], T],
    *,
    stats: LineStats,
    failures: TextIO | None = None,
) -> Iterator[T]:
    for line in read_log_lines(path):
        if not line.strip():
            continue

        try:
            entry = parse_line(line)
        except LineParseError:
            stats.failed += 1
            print(f"⚠️ Failed to parse line: {line}")
            if failures is not None:
                failures.write(line + "\n")
            continue

        stats.parsed += 1
        yield entry


def open_failures_log(output_path: Path) -> TextIO:
    return (output_path.parent / "failures.log").open("w", encoding="utf-8")


def report_file(stats: LineStats, path: Path, repo_root: Path) -> None:
    print(f"✅ Added {stats.parsed} entries from file: {display_path(path, repo_root)}")
    if stats.failed:
        print(f"⚠️ Skipped unparseable lines: {stats.failed}")


def run_dhcp_table(repo_root: Path, args: argparse.Namespace | None = None) -> int:
    files = resolve_input_files(repo_root, getattr(args, "files", None), "dhcp")
    if not files:
        print("❌ No DHCP log files found in data/raw/dhcp/")
        return 1

    output_path = resolve_output_path(repo_root, args)
    total_entries = 0
    total_acks = 0

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with LogDatabase(output_path) as database, open_failures_log(output_path) as failures:
            database.create_dhcp_table()
            for path in files:
                stats = LineStats()
                for entry in iter_parsed_lines(path, parse_dhcp_line, stats=stats, failures=failures):
                    if database.insert_dhcp_entry(entry):
                        total_acks += 1
                report_file(stats, path, repo_root)
                total_entries += stats.parsed
    except (OSError, sqlite3.Error) as exc:
        print(f"❌ Failed to load DHCP logs: {exc}")
        return 1

    print(f"✅ Added {total_entries} total entries ({total_acks} leases)")
    print(f"📁 Saved to table {DHCP_TABLE} in {display_path(output_path, repo_root)}")
    print(CONSOLE_SEPARATOR)
    return 0


def run_http_table(repo_root: Path, args: argparse.Namespace | None = None) -> int:
    files = resolve_input_files(repo_root, getattr(args, "files", None), "http")
    if not files:
        print("❌ No HTTP log files found in data/raw/http/")
        return 1

    output_path = resolve_output_path(repo_root, args)
    total_entries = 0

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with LogDatabase(output_path) as database, open_failures_log(output_path) as failures:
            database.create_http_table()
            for path in files:
                stats = LineStats()
                for entry in iter_parsed_lines(path, parse_http_line, stats=stats, failures=failures):
                    database.insert_http_entry(entry)
                report_file(stats, path, repo_root)
                total_entries += stats.parsed
    except (OSError, sqlite3.Error) as exc:
        print(f"❌ Failed to load HTTP logs: {exc}")
        return 1

    print(f"✅ Added {total_entries} total entries")
    print(f"📁 Saved to table {HTTP_TABLE} in {display_path(output_path, repo_root)}")
    print(CONSOLE_SEPARATOR)
    return 0


def run_correlate(repo_root: Path, args: argparse.Namespace | None = None) -> int:
    dhcp_files = resolve_input_files(repo_root, getattr(args, "dhcp", None), "dhcp")
    http_files = resolve_input_files(repo_root, getattr(args, "http", None), "http")

    if not dhcp_files:
        print("❌ No DHCP log files found in data/raw/dhcp/")
        return 1
    if not http_files:
        print("❌ No HTTP log files found in data/raw/http/")
        return 1

    allow_list_arg = getattr(args, "allow_list", None)
    allow_list_path = Path(allow_list_arg) if allow_list_arg else repo_root / "configs" / "friendly_names.yml"
    allow_list = load_allow_list(allow_list_path)
    ip_attribute = getattr(args, "ip_attribute", None) or DEFAULT_IP_ATTRIBUTE

    output_path = resolve_output_path(repo_root, args)
    history = LeaseHistory()
    stats = CorrelationStats()

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open_failures_log(output_path) as failures:
            for path in dhcp_files:
                line_stats = LineStats()
                history.add_entries(
                    iter_parsed_lines(path, parse_dhcp_line, stats=line_stats, failures=failures)
                )
                report_file(line_stats, path, repo_root)

            index, directory = history.finalize()
            print(
                f"🔎 Lease timelines: {len(index)} IP addresses, "
                f"{history.ack_count} leases, {len(directory)} named devices"
            )
            if history.name_conflicts:
                print(f"⚠️ Device name conflicts: {history.name_conflicts}")
            print(CONSOLE_SEPARATOR)

            with LogDatabase(output_path) as database:
                database.create_correlated_table()
                for path in http_files:
                    line_stats = LineStats()
                    records = correlate(
                        iter_parsed_lines(path, parse_http_line, stats=line_stats, failures=failures),
                        index,
                        directory,
                        allow_list,
                        ip_attribute=ip_attribute,
                        stats=stats,
                    )
                    for record in records:
                        database.insert_correlated(record)
                    report_file(line_stats, path, repo_root)
    except (OSError, sqlite3.Error) as exc:
        print(f"❌ Failed to correlate logs: {exc}")
        return 1

    print(stats.summary_line())
    print(f"📁 Saved to table {CORRELATED_TABLE} in {display_path(output_path, repo_root)}")
    print(CONSOLE_SEPARATOR)
    return 0


def run_all(repo_root: Path, args: argparse.Namespace | None = None) -> int:
    dhcp_result = run_dhcp_table(repo_root, args)
    if dhcp_result != 0:
        return dhcp_result

    http_result = run_http_table(repo_root, args)
    if http_result != 0:
        return http_result

    return run_correlate(repo_root, args)


def add_output_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--output",
        help="SQLite database to write (default: data/interim/output.db)",
    )


def add_correlation_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--allow-list",
        help="YAML file with recognised device names (default: configs/friendly_names.yml)",
    )
    parser.add_argument(
        "--ip-attribute",
        default=DEFAULT_IP_ATTRIBUTE,
        help=f"HTTP attribute holding the client IP (default: {DEFAULT_IP_ATTRIBUTE})",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Utility for attributing gateway web traffic to devices",
    )
    subparsers = parser.add_subparsers(dest="command")

    dhcp_parser = subparsers.add_parser(
        "dhcp-table",
        help="Load DHCP logs into the dhcp_logs table",
    )
    dhcp_parser.add_argument("files", nargs="*", metavar="FILE")
    add_output_argument(dhcp_parser)
    dhcp_parser.set_defaults(command_func=run_dhcp_table)

    http_parser = subparsers.add_parser(
        "http-table",
        help="Load HTTP proxy logs into the logs table",
    )
    http_parser.add_argument("files", nargs="*", metavar="FILE")
    add_output_argument(http_parser)
    http_parser.set_defaults(command_func=run_http_table)

    correlate_parser = subparsers.add_parser(
        "correlate",
        help="Attribute HTTP requests to devices using the DHCP lease history",
    )
    correlate_parser.add_argument("--dhcp", nargs="+", metavar="FILE", help="DHCP log files")
    correlate_parser.add_argument("--http", nargs="+", metavar="FILE", help="HTTP proxy log files")
    add_output_argument(correlate_parser)
    add_correlation_arguments(correlate_parser)
    correlate_parser.set_defaults(command_func=run_correlate)

    all_parser = subparsers.add_parser(
        "all",
        help="Load both log families and correlate them",
    )
    add_output_argument(all_parser)
    add_correlation_arguments(all_parser)
    all_parser.set_defaults(command_func=run_all)

    return parser


def main(argv: List[str] | None = None) -> int:
    repo_root = Path(__file__).resolve().parent.parent
    parser = build_parser()
    args = parser.parse_args(argv)

    command_func = getattr(args, "command_func", run_all)
    return command_func(repo_root, args)


if __name__ == "__main__":
    sys.exit(main())
