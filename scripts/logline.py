"""Line grammars for gateway DHCP and HTTP proxy logs.

Both log families start with the same fixed-width timestamp followed by a
free-form service banner, for example::

    2015:06:03-00:01:00 PublicWiFi dhcpd: DHCPACK to 192.168.0.77 (9c:ad:97:d1:65:39
    2016:04:03-23:59:59 publicwifi httpproxy[18500]: srcip="10.0.0.5" url="http://a/"

Every parser works on a ``(text, pos)`` cursor and either returns the parsed
value together with the position after it or raises ``LineParseError``. The
cursor is never mutated in place, so trying the next alternative after a
failed one always starts from the original position.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

# ASCII whitespace as accepted by the gateway grammars (no vertical tab).
WHITESPACE = " \t\n\x0c\r"
_WS = r"[ \t\n\x0c\r]"

TIMESTAMP_FIELDS = ("year", "month", "day", "hour", "minute", "second")

TIMESTAMP_PATTERN = re.compile(
    r"(?P<year>[0-9]{4}):(?P<month>[0-9]{2}):(?P<day>[0-9]{2})"
    r"-(?P<hour>[0-9]{2}):(?P<minute>[0-9]{2}):(?P<second>[0-9]{2})"
)

BANNER_PATTERN = re.compile(r"[^:]+:" + _WS)

IP_ADDRESS = r"[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}"
HARDWARE_ADDRESS = r"[0-9A-Fa-f:]{17}"
DEVICE_NAME_SUFFIX = r"(?:" + _WS + r"\((?P<name>[^()]+)\))?"

ACK_TAIL_PATTERNS = [
    # ISC dhcpd: "DHCPACK on 192.168.0.254 to a4:db:30:66:4f:90 (Joes-iPhone) via eth1"
    re.compile(
        _WS + r"on (?P<ip>" + IP_ADDRESS + r")" + _WS
        + r"to (?P<mac>" + HARDWARE_ADDRESS + r")" + DEVICE_NAME_SUFFIX
    ),
    # UTM firmware: "DHCPACK to 192.168.0.77 (9c:ad:97:d1:65:39", closing paren optional
    re.compile(
        _WS + r"to (?P<ip>" + IP_ADDRESS + r")" + _WS
        + r"\((?P<mac>" + HARDWARE_ADDRESS + r")\)?" + DEVICE_NAME_SUFFIX
    ),
]

HTTP_ATTR_PATTERN = re.compile(r'(?P<key>[^=]+)="(?P<value>[^"]*)"')


class LineParseError(ValueError):
    """Raised when a log line does not match its grammar."""


class MalformedLineError(LineParseError):
    """The text does not have the shape the grammar expects."""


class ValueRangeError(LineParseError):
    """The digits parsed but do not form a legal date or time."""


class DhcpMessageKind(Enum):
    INFORM = "DHCPINFORM"
    OFFER = "DHCPOFFER"
    ACK = "DHCPACK"
    NAK = "DHCPNAK"
    REQUEST = "DHCPREQUEST"
    DISCOVER = "DHCPDISCOVER"


@dataclass(frozen=True)
class DhcpAck:
    ip_address: str
    hardware_address: str
    device_name: str | None = None


@dataclass(frozen=True)
class DhcpLogEntry:
    timestamp: datetime
    kind: DhcpMessageKind
    ack: DhcpAck | None = None


@dataclass(frozen=True)
class HttpLogEntry:
    timestamp: datetime
    attrs: Dict[str, str] = field(default_factory=dict)


def parse_timestamp(text: str, pos: int = 0) -> Tuple[datetime, int]:
    """Parse ``YYYY:MM:DD-hh:mm:ss`` at *pos*.

    Digit counts are exact. ``MalformedLineError`` is raised when the token
    does not have that shape and ``ValueRangeError`` when it does but names
    an impossible moment such as February 30 or hour 24.
    """

    match = TIMESTAMP_PATTERN.match(text, pos)
    if match is None:
        raise MalformedLineError(f"expected YYYY:MM:DD-hh:mm:ss at column {pos}")

    try:
        value = datetime(*(int(match.group(name)) for name in TIMESTAMP_FIELDS))
    except ValueError as exc:
        raise ValueRangeError(f"timestamp out of range: {match.group(0)}") from exc

    return value, match.end()


def skip_banner(text: str, pos: int) -> int:
    match = BANNER_PATTERN.match(text, pos)
    if match is None:
        raise MalformedLineError(f"expected '<banner>: ' at column {pos}")
    return match.end()


def parse_dhcp_ack(text: str, pos: int) -> Tuple[DhcpAck, int]:
    """Parse the tail following ``DHCPACK`` in either firmware layout."""

    for pattern in ACK_TAIL_PATTERNS:
        match = pattern.match(text, pos)
        if match is None:
            continue
        ack = DhcpAck(
            ip_address=match.group("ip"),
            hardware_address=match.group("mac"),
            device_name=match.group("name"),
        )
        return ack, match.end()

    raise MalformedLineError(f"unrecognised DHCPACK tail at column {pos}")


def _no_payload(text: str, pos: int) -> Tuple[None, int]:
    return None, pos


TailParser = Callable[[str, int], Tuple[Optional[DhcpAck], int]]

# Tried in order; ACK sits before the bare keywords so its tail is attempted first.
DHCP_MESSAGE_PARSERS: List[Tuple[str, DhcpMessageKind, TailParser]] = [
    ("INFORM", DhcpMessageKind.INFORM, _no_payload),
    ("OFFER", DhcpMessageKind.OFFER, _no_payload),
    ("ACK", DhcpMessageKind.ACK, parse_dhcp_ack),
    ("NAK", DhcpMessageKind.NAK, _no_payload),
    ("REQUEST", DhcpMessageKind.REQUEST, _no_payload),
    ("DISCOVER", DhcpMessageKind.DISCOVER, _no_payload),
]


def parse_dhcp_message(text: str, pos: int) -> Tuple[DhcpMessageKind, DhcpAck | None, int]:
    if not text.startswith("DHCP", pos):
        raise MalformedLineError(f"expected DHCP message at column {pos}")
    pos += len("DHCP")

    for keyword, kind, tail in DHCP_MESSAGE_PARSERS:
        if not text.startswith(keyword, pos):
            continue
        try:
            ack, end = tail(text, pos + len(keyword))
        except MalformedLineError:
            continue
        return kind, ack, end

    raise MalformedLineError(f"unrecognised DHCP message at column {pos}")


def parse_dhcp_line(line: str) -> DhcpLogEntry:
    """Parse one DHCP server log line.

    Text after the recognised message (``for``/``via`` clauses and the like)
    is ignored.
    """

    timestamp, pos = parse_timestamp(line)
    pos = skip_banner(line, pos)
    kind, ack, _ = parse_dhcp_message(line, pos)
    return DhcpLogEntry(timestamp=timestamp, kind=kind, ack=ack)


def parse_http_attrs(text: str, pos: int) -> Tuple[Dict[str, str], int]:
    """Parse ``key="value"`` pairs separated by single whitespace characters.

    Parsing stops quietly at the end of input or at a ``=`` where a key
    should start; an attribute that begins but does not complete fails the
    whole line. Later duplicates of a key overwrite earlier ones.
    """

    attrs: Dict[str, str] = {}
    length = len(text)

    while pos < length and text[pos] != "=":
        match = HTTP_ATTR_PATTERN.match(text, pos)
        if match is None:
            raise MalformedLineError(f"malformed attribute at column {pos}")
        attrs[match.group("key")] = match.group("value")
        pos = match.end()

        if pos < length:
            if text[pos] not in WHITESPACE:
                raise MalformedLineError(f"expected separator after attribute at column {pos}")
            pos += 1

    return attrs, pos


def parse_http_line(line: str) -> HttpLogEntry:
    timestamp, pos = parse_timestamp(line)
    pos = skip_banner(line, pos)
    attrs, _ = parse_http_attrs(line, pos)
    return HttpLogEntry(timestamp=timestamp, attrs=attrs)
