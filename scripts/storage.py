"""SQLite persistence for parsed and correlated log entries.

Tables are recreated on every run. HTTP attribute keys become TEXT columns
the first time they are seen, so the schema grows with the input.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Dict, Iterable, List

from leases import CorrelatedRecord
from logline import DhcpLogEntry, HttpLogEntry

DHCP_TABLE = "dhcp_logs"
HTTP_TABLE = "logs"
CORRELATED_TABLE = "correlated_logs"

DHCP_COLUMNS = ["datetime", "ip_addr", "mac_addr"]
HTTP_COLUMNS = ["datetime"]
CORRELATED_COLUMNS = ["datetime", "mac_addr", "device_name"]


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def sanitize_column(key: str, reserved: Iterable[str] = ()) -> str:
    """Map an attribute key to a column name.

    ``group`` becomes ``_group`` and dashes become underscores. Keys that
    clash with one of the *reserved* fixed columns also get a leading
    underscore.
    """

    column = key.replace("-", "_")
    blocked = {"group"} | {name.lower() for name in reserved}
    if column.lower() in blocked:
        column = "_" + column
    return column


def format_timestamp(entry: DhcpLogEntry | HttpLogEntry) -> str:
    return entry.timestamp.isoformat(sep=" ")


class LogDatabase:
    """One SQLite connection holding a single transaction per run."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.connection = sqlite3.connect(str(db_path))
        self._fixed: Dict[str, List[str]] = {}
        # table -> lower-cased column name -> column name as created
        self._columns: Dict[str, Dict[str, str]] = {}

    def __enter__(self) -> "LogDatabase":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                self.commit()
            else:
                self.rollback()
        finally:
            self.close()

    def commit(self) -> None:
        self.connection.commit()

    def rollback(self) -> None:
        self.connection.rollback()

    def close(self) -> None:
        self.connection.close()

    def create_table(self, table: str, columns: List[str]) -> None:
        definitions = ", ".join(f"{quote_identifier(column)} TEXT" for column in columns)
        self.connection.execute(f"DROP TABLE IF EXISTS {quote_identifier(table)}")
        self.connection.execute(f"CREATE TABLE {quote_identifier(table)} ({definitions})")
        self._fixed[table] = list(columns)
        self._columns[table] = {column.lower(): column for column in columns}

    def create_dhcp_table(self) -> None:
        self.create_table(DHCP_TABLE, DHCP_COLUMNS)

    def create_http_table(self) -> None:
        self.create_table(HTTP_TABLE, HTTP_COLUMNS)

    def create_correlated_table(self) -> None:
        self.create_table(CORRELATED_TABLE, CORRELATED_COLUMNS)

    def columns(self, table: str) -> List[str]:
        cursor = self.connection.execute(f"PRAGMA table_info({quote_identifier(table)})")
        return [row[1] for row in cursor.fetchall()]

    def add_column(self, table: str, column: str) -> None:
        self.connection.execute(
            f"ALTER TABLE {quote_identifier(table)} ADD COLUMN {quote_identifier(column)} TEXT"
        )
        self._columns[table][column.lower()] = column

    def attribute_values(self, table: str, attrs: Dict[str, str]) -> Dict[str, str]:
        """Sanitise *attrs* into column values, adding missing columns.

        SQLite column names are case-insensitive, so keys that only differ
        in case or in ``-``/``_`` share one column and the later value wins.
        """

        known = self._columns[table]
        values: Dict[str, str] = {}
        for key, value in attrs.items():
            column = sanitize_column(key, self._fixed[table])
            if column.lower() not in known:
                self.add_column(table, column)
            values[known[column.lower()]] = value
        return values

    def insert_row(self, table: str, values: Dict[str, str]) -> None:
        columns = ", ".join(quote_identifier(column) for column in values)
        placeholders = ", ".join("?" for _ in values)
        self.connection.execute(
            f"INSERT INTO {quote_identifier(table)} ({columns}) VALUES ({placeholders})",
            list(values.values()),
        )

    def insert_dhcp_entry(self, entry: DhcpLogEntry) -> bool:
        """Store *entry* if it is an acknowledgement; other messages carry no addresses."""

        if entry.ack is None:
            return False

        self.insert_row(
            DHCP_TABLE,
            {
                "datetime": format_timestamp(entry),
                "ip_addr": entry.ack.ip_address,
                "mac_addr": entry.ack.hardware_address,
            },
        )
        return True

    def insert_http_entry(self, entry: HttpLogEntry) -> None:
        values = self.attribute_values(HTTP_TABLE, entry.attrs)
        values["datetime"] = format_timestamp(entry)
        self.insert_row(HTTP_TABLE, values)

    def insert_correlated(self, record: CorrelatedRecord) -> None:
        values = self.attribute_values(CORRELATED_TABLE, record.attrs)
        values["datetime"] = format_timestamp(record.entry)
        values["mac_addr"] = record.hardware_address
        values["device_name"] = record.device_name
        self.insert_row(CORRELATED_TABLE, values)
