"""Replay DHCP lease history and attribute proxy requests to devices.

The workflow is strictly two-phase: every DHCP entry is fed into a
``LeaseHistory`` builder, the builder is frozen with ``finalize()`` into a
``LeaseIndex`` and a ``NameDirectory``, and only then are HTTP entries
joined against the frozen objects with ``correlate``.
"""

from __future__ import annotations

import bisect
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from operator import itemgetter
from pathlib import Path
from types import MappingProxyType
from typing import DefaultDict, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Tuple

import yaml

from logline import DhcpLogEntry, HttpLogEntry

DEFAULT_IP_ATTRIBUTE = "srcip"

Run = Tuple[datetime, str]


def collapse_runs(entries: Iterable[Run]) -> List[Run]:
    """Keep only the entries where the hardware address changes.

    The first entry is always kept; each later one survives only when its
    hardware address differs from the entry right before it.
    """

    runs: List[Run] = []
    previous: str | None = None
    for timestamp, hardware_address in entries:
        if not runs or hardware_address != previous:
            runs.append((timestamp, hardware_address))
        previous = hardware_address
    return runs


class LeaseIndex:
    """Read-only IP ownership timelines."""

    def __init__(self, timelines: Mapping[str, List[Run]]) -> None:
        self._runs: Dict[str, Tuple[Run, ...]] = {
            ip: tuple(runs) for ip, runs in timelines.items() if runs
        }
        self._starts: Dict[str, List[datetime]] = {
            ip: [timestamp for timestamp, _ in runs] for ip, runs in self._runs.items()
        }

    def __len__(self) -> int:
        return len(self._runs)

    def __contains__(self, ip: object) -> bool:
        return ip in self._runs

    def ips(self) -> List[str]:
        return sorted(self._runs)

    def runs(self, ip: str) -> Tuple[Run, ...]:
        return self._runs.get(ip, ())

    def lookup(self, ip: str, query_time: datetime) -> str | None:
        """Return the hardware address holding *ip* just before *query_time*.

        A run that starts exactly at *query_time* is not yet in effect, so a
        request logged in the same second as a lease change belongs to the
        previous owner.
        """

        starts = self._starts.get(ip)
        if not starts:
            return None

        position = bisect.bisect_left(starts, query_time)
        if position == 0:
            return None
        return self._runs[ip][position - 1][1]


class NameDirectory:
    """Read-only hardware address to device name mapping."""

    def __init__(self, names: Mapping[str, str]) -> None:
        self._names = MappingProxyType(dict(names))

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, hardware_address: object) -> bool:
        return hardware_address in self._names

    def get(self, hardware_address: str) -> str | None:
        return self._names.get(hardware_address)

    def as_dict(self) -> Dict[str, str]:
        return dict(self._names)


@dataclass
class LeaseHistory:
    """Mutable accumulator for DHCP acknowledgements.

    Entries may arrive in any order and from any number of files; global
    time order is imposed per IP in ``finalize``.
    """

    raw: DefaultDict[str, List[Run]] = field(default_factory=lambda: defaultdict(list))
    names: Dict[str, str] = field(default_factory=dict)
    ack_count: int = 0
    name_conflicts: int = 0

    def add(self, entry: DhcpLogEntry) -> None:
        ack = entry.ack
        if ack is None:
            return

        self.raw[ack.ip_address].append((entry.timestamp, ack.hardware_address))
        self.ack_count += 1

        if ack.device_name:
            self.record_name(ack.hardware_address, ack.device_name)

    def add_entries(self, entries: Iterable[DhcpLogEntry]) -> None:
        for entry in entries:
            self.add(entry)

    def record_name(self, hardware_address: str, device_name: str) -> None:
        known = self.names.get(hardware_address)
        if known is None:
            self.names[hardware_address] = device_name
            return

        if known != device_name:
            self.name_conflicts += 1
            print(
                f"⚠️ Conflicting device name for {hardware_address}: "
                f'keeping "{known}", ignoring "{device_name}"'
            )

    def finalize(self) -> Tuple[LeaseIndex, NameDirectory]:
        # sorted() is stable, so same-second entries keep their arrival order.
        timelines = {
            ip: collapse_runs(sorted(entries, key=itemgetter(0)))
            for ip, entries in self.raw.items()
        }
        return LeaseIndex(timelines), NameDirectory(self.names)


@dataclass(frozen=True)
class CorrelatedRecord:
    entry: HttpLogEntry
    hardware_address: str
    device_name: str

    @property
    def timestamp(self) -> datetime:
        return self.entry.timestamp

    @property
    def attrs(self) -> Dict[str, str]:
        return self.entry.attrs


@dataclass
class CorrelationStats:
    matched: int = 0
    missing_ip: int = 0
    no_lease: int = 0
    unnamed: int = 0
    not_allowed: int = 0

    @property
    def dropped(self) -> int:
        return self.missing_ip + self.no_lease + self.unnamed + self.not_allowed

    def summary_line(self) -> str:
        return (
            f"🔗 Correlation summary: matched={self.matched}, dropped={self.dropped} "
            f"(no-ip={self.missing_ip}, no-lease={self.no_lease}, "
            f"unnamed={self.unnamed}, not-allowed={self.not_allowed})"
        )


def attribute_entry(
    entry: HttpLogEntry,
    index: LeaseIndex,
    directory: NameDirectory,
    allow_list: FrozenSet[str],
    *,
    ip_attribute: str = DEFAULT_IP_ATTRIBUTE,
    stats: CorrelationStats | None = None,
) -> CorrelatedRecord | None:
    """Resolve the device behind *entry*, or ``None`` when it cannot be named."""

    if stats is None:
        stats = CorrelationStats()

    ip = entry.attrs.get(ip_attribute)
    if ip is None:
        stats.missing_ip += 1
        return None

    hardware_address = index.lookup(ip, entry.timestamp)
    if hardware_address is None:
        stats.no_lease += 1
        return None

    device_name = directory.get(hardware_address)
    if device_name is None:
        stats.unnamed += 1
        return None

    device_name = device_name.lower()
    if device_name not in allow_list:
        stats.not_allowed += 1
        return None

    stats.matched += 1
    return CorrelatedRecord(
        entry=entry,
        hardware_address=hardware_address,
        device_name=device_name,
    )


def correlate(
    entries: Iterable[HttpLogEntry],
    index: LeaseIndex,
    directory: NameDirectory,
    allow_list: FrozenSet[str],
    *,
    ip_attribute: str = DEFAULT_IP_ATTRIBUTE,
    stats: CorrelationStats | None = None,
) -> Iterator[CorrelatedRecord]:
    for entry in entries:
        record = attribute_entry(
            entry,
            index,
            directory,
            allow_list,
            ip_attribute=ip_attribute,
            stats=stats,
        )
        if record is not None:
            yield record


def load_allow_list(config_path: Path) -> FrozenSet[str]:
    """Load recognised device names from a YAML ``names:`` list.

    Names are stripped and lower-cased. Any problem with the file results in
    a warning and an empty allow-list, which attributes nothing.
    """

    if not config_path.exists():
        print(f"⚠️ Allow-list {config_path.as_posix()} not found, no device will be attributed")
        return frozenset()

    config_label = config_path.as_posix()

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        print(f"⚠️ Unable to read {config_label}: {exc}")
        return frozenset()
    except yaml.YAMLError as exc:
        print(f"⚠️ Unable to parse {config_label}: {exc}")
        return frozenset()

    if not isinstance(data, dict):
        print(f"⚠️ Invalid structure in {config_label}, allow-list disabled")
        return frozenset()

    names = data.get("names")
    if names is None:
        return frozenset()

    if not isinstance(names, list) or not all(isinstance(item, str) for item in names):
        print(f"⚠️ Invalid structure in {config_label}, allow-list disabled")
        return frozenset()

    return frozenset(name.strip().lower() for name in names if name.strip())
