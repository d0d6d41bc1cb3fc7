import pathlib
import sqlite3
import sys
from datetime import datetime

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SCRIPTS_DIR = PROJECT_ROOT / "scripts"

if str(SCRIPTS_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_DIR))

import leases  # type: ignore  # noqa: E402
import logline  # type: ignore  # noqa: E402
import storage  # type: ignore  # noqa: E402

TIMESTAMP = datetime(2016, 4, 3, 23, 59, 59)


def fetch_all(db_path: pathlib.Path, query: str):
    connection = sqlite3.connect(str(db_path))
    try:
        return connection.execute(query).fetchall()
    finally:
        connection.close()


def test_sanitize_column_renames_reserved_names():
    assert storage.sanitize_column("group") == "_group"
    assert storage.sanitize_column("user-agent") == "user_agent"
    assert storage.sanitize_column("srcip") == "srcip"
    assert storage.sanitize_column("datetime", ["datetime"]) == "_datetime"
    assert storage.sanitize_column("Device_Name", ["device_name"]) == "_Device_Name"


def test_quote_identifier_escapes_quotes():
    assert storage.quote_identifier('we"ird') == '"we""ird"'


def test_insert_dhcp_entry_stores_only_acknowledgements(tmp_path: pathlib.Path):
    db_path = tmp_path / "output.db"
    ack = logline.DhcpLogEntry(
        timestamp=TIMESTAMP,
        kind=logline.DhcpMessageKind.ACK,
        ack=logline.DhcpAck("192.168.0.77", "9c:ad:97:d1:65:39"),
    )
    offer = logline.DhcpLogEntry(timestamp=TIMESTAMP, kind=logline.DhcpMessageKind.OFFER)

    with storage.LogDatabase(db_path) as database:
        database.create_dhcp_table()
        assert database.insert_dhcp_entry(ack) is True
        assert database.insert_dhcp_entry(offer) is False

    rows = fetch_all(db_path, "SELECT datetime, ip_addr, mac_addr FROM dhcp_logs")
    assert rows == [("2016-04-03 23:59:59", "192.168.0.77", "9c:ad:97:d1:65:39")]


def test_insert_http_entry_grows_schema(tmp_path: pathlib.Path):
    db_path = tmp_path / "output.db"
    first = logline.HttpLogEntry(TIMESTAMP, {"srcip": "10.0.0.5", "group": "7"})
    second = logline.HttpLogEntry(TIMESTAMP, {"srcip": "10.0.0.6", "user-agent": "curl"})

    with storage.LogDatabase(db_path) as database:
        database.create_http_table()
        database.insert_http_entry(first)
        database.insert_http_entry(second)
        assert database.columns("logs") == ["datetime", "srcip", "_group", "user_agent"]

    rows = fetch_all(db_path, 'SELECT srcip, "_group", user_agent FROM logs ORDER BY srcip')
    assert rows == [("10.0.0.5", "7", None), ("10.0.0.6", None, "curl")]


def test_keys_differing_only_in_case_share_a_column(tmp_path: pathlib.Path):
    db_path = tmp_path / "output.db"
    entry = logline.HttpLogEntry(TIMESTAMP, {"Host": "a", "host": "b", "x-id": "1", "x_id": "2"})

    with storage.LogDatabase(db_path) as database:
        database.create_http_table()
        database.insert_http_entry(entry)
        assert database.columns("logs") == ["datetime", "Host", "x_id"]

    assert fetch_all(db_path, "SELECT Host, x_id FROM logs") == [("b", "2")]


def test_insert_correlated_adds_device_columns(tmp_path: pathlib.Path):
    db_path = tmp_path / "output.db"
    entry = logline.HttpLogEntry(TIMESTAMP, {"srcip": "10.0.0.5", "datetime": "spoofed"})
    record = leases.CorrelatedRecord(entry, "a4:db:30:66:4f:90", "joe")

    with storage.LogDatabase(db_path) as database:
        database.create_correlated_table()
        database.insert_correlated(record)

    rows = fetch_all(
        db_path,
        'SELECT datetime, mac_addr, device_name, srcip, "_datetime" FROM correlated_logs',
    )
    assert rows == [("2016-04-03 23:59:59", "a4:db:30:66:4f:90", "joe", "10.0.0.5", "spoofed")]


def test_create_table_replaces_previous_run(tmp_path: pathlib.Path):
    db_path = tmp_path / "output.db"
    entry = logline.HttpLogEntry(TIMESTAMP, {"srcip": "10.0.0.5"})

    for _ in range(2):
        with storage.LogDatabase(db_path) as database:
            database.create_http_table()
            database.insert_http_entry(entry)

    assert fetch_all(db_path, "SELECT COUNT(*) FROM logs") == [(1,)]


def test_failed_run_is_rolled_back(tmp_path: pathlib.Path):
    db_path = tmp_path / "output.db"

    with storage.LogDatabase(db_path) as database:
        database.create_dhcp_table()

    with pytest.raises(RuntimeError):
        with storage.LogDatabase(db_path) as database:
            database.insert_dhcp_entry(
                logline.DhcpLogEntry(
                    timestamp=TIMESTAMP,
                    kind=logline.DhcpMessageKind.ACK,
                    ack=logline.DhcpAck("192.168.0.77", "9c:ad:97:d1:65:39"),
                )
            )
            raise RuntimeError("abort")

    assert fetch_all(db_path, "SELECT COUNT(*) FROM dhcp_logs") == [(0,)]
