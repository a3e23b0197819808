from __future__ import annotations

import pytest

from errors import ParseFailure
from hostmap import AliasTable, load, parse_aliases

ALIAS_YAML = """
db-scan.example.org:
  ips: ["2.3.4.5", "6.7.8.9"]
  port: "1521"
  scan:
    - host: db1-vip.example.org
      ip: "14.15.16.17"
    - db5.example.org
    - db9.example.org
db5.example.org:
  ips: ["44.55.66.77"]
  port: "1521"
  scan:
    - host: db6.example.org
      ip: "88.88.88.88"
HOST.Example:
  ips: ["9.9.9.9"]
  port: "6005-6010"
"""


def _write(tmp_path, text: str):
    p = tmp_path / "onprem-firewall.yaml"
    p.write_text(text)
    return p


def test_load_reads_aliases_and_lowercases_names(tmp_path) -> None:
    table = load(_write(tmp_path, ALIAS_YAML))

    assert len(table) == 3
    assert "host.example" in table
    alias = table.lookup("HOST.EXAMPLE")
    assert alias is not None
    assert alias.ips == frozenset({"9.9.9.9"})
    assert alias.port == tuple(range(6005, 6011))


def test_expand_follows_scan_hosts_one_level(tmp_path) -> None:
    table = load(_write(tmp_path, ALIAS_YAML))

    ips, names = table.expand("db-scan.example.org")

    # own ips + scan ip + db5's ips, but not db5's own scan host
    assert ips == frozenset({"2.3.4.5", "6.7.8.9", "14.15.16.17", "44.55.66.77"})
    assert "88.88.88.88" not in ips
    assert names == frozenset({"db9.example.org"})


def test_expand_unknown_host_is_empty() -> None:
    assert AliasTable().expand("nope.example.org") == (frozenset(), frozenset())


def test_legacy_oracle_layout_is_accepted() -> None:
    table = parse_aliases(
        {
            "oracle": [
                {"host": "db5.adeo.no", "ips": ["44.55.66.77"], "port": 1521},
            ]
        }
    )
    assert table.lookup("db5.adeo.no").ips == frozenset({"44.55.66.77"})


def test_no_path_gives_empty_table() -> None:
    assert len(load(None)) == 0


def test_missing_file_is_parse_failure(tmp_path) -> None:
    with pytest.raises(ParseFailure):
        load(tmp_path / "missing.yaml")


@pytest.mark.parametrize(
    "text",
    [
        "- just\n- a list\n",
        "db.example.org: [1, 2]\n",
        "db.example.org:\n  ips: ['not-an-ip']\n",
        "db.example.org:\n  ips: ['1.2.3.4']\n  port: 'abc'\n",
        "db.example.org:\n  ips: ['1.2.3.4']\n  scan: [{host: 'x', ip: '1.2.3.4'}]\n",
        "db.example.org: {ips: [\n",
    ],
)
def test_malformed_alias_file_is_parse_failure(tmp_path, text: str) -> None:
    with pytest.raises(ParseFailure):
        load(_write(tmp_path, text))


def test_table_is_read_only(tmp_path) -> None:
    table = load(_write(tmp_path, ALIAS_YAML))
    with pytest.raises(TypeError):
        table._aliases["new.example.org"] = None  # type: ignore[index]
