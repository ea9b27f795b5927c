"""
Command line entry points that run without network access.
"""

import json

from click.testing import CliRunner

from conftest import order_record
from ordsync import cli
from ordsync_db import LocationMappingStore, OrderRepository
from ordsync_models import SyncStatus, order_from_oms
from test_settings import REQUIRED


def full_env(monkeypatch, tmp_path):
    for key, value in REQUIRED.items():
        monkeypatch.setenv(key, value)
    db = str(tmp_path / "cli.sqlite3")
    monkeypatch.setenv("ORDSYNC_DB", db)
    return db


def test_map_location_stores_mapping(monkeypatch, tmp_path):
    db = full_env(monkeypatch, tmp_path)

    result = CliRunner().invoke(
        cli, ["map-location", "--books-id", " 347732000000070863 ", "--oms-id", "loc-guid", "--oms-name", "Main"]
    )

    assert result.exit_code == 0, result.output
    assert "Mapped 347732000000070863 -> loc-guid" in result.output
    mapping = LocationMappingStore(db).get("347732000000070863")
    assert mapping.oms_location_name == "Main"


def test_map_location_rejects_blank_ids(monkeypatch, tmp_path):
    full_env(monkeypatch, tmp_path)

    result = CliRunner().invoke(cli, ["map-location", "--books-id", "  ", "--oms-id", "loc"])

    assert result.exit_code != 0
    assert "Invalid mapping" in result.output


def test_commands_refuse_to_run_without_env(monkeypatch):
    for key in REQUIRED:
        monkeypatch.delenv(key, raising=False)

    result = CliRunner().invoke(cli, ["sync"])

    assert result.exit_code != 0
    assert "Missing environment variables" in result.output


def test_webhook_replay_rejects_bad_json(monkeypatch, tmp_path):
    full_env(monkeypatch, tmp_path)
    payload = tmp_path / "payload.json"
    payload.write_text("{not json")

    result = CliRunner().invoke(cli, ["webhook-stock", str(payload)])

    assert result.exit_code != 0
    assert "not valid JSON" in result.output


def test_webhook_replay_without_known_resources(monkeypatch, tmp_path):
    full_env(monkeypatch, tmp_path)
    payload = tmp_path / "payload.json"
    payload.write_text(json.dumps({"invoice": {"line_items": []}}))

    result = CliRunner().invoke(cli, ["webhook-stock", str(payload)])

    assert result.exit_code == 0, result.output
    assert "No processing required" in result.output


def test_reset_retries_requeues_capped_orders(monkeypatch, tmp_path):
    db = full_env(monkeypatch, tmp_path)
    repo = OrderRepository(db)
    repo.save_orders([order_from_oms(order_record("o1")), order_from_oms(order_record("o2"))])
    for _ in range(5):
        repo.update_sync_status("o1", SyncStatus.FAILED, "boom")
        repo.update_sync_status("o2", SyncStatus.FAILED, "boom")

    result = CliRunner().invoke(cli, ["reset-retries", "o1"])

    assert result.exit_code == 0, result.output
    assert "Reset retries for 1 failed order(s)" in result.output
    assert repo.get("o1").sync_retries == 0
    assert repo.find_retry_exhausted(max_retries=5) == ["o2"]
