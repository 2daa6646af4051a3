import logging

from presence import main as entry


def test_missing_credentials_exit_with_error(tmp_path, monkeypatch, caplog):
    for var in ("GOOGLE_SHEET_ID", "GOOGLE_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    started = []
    monkeypatch.setattr("presence.api.run_api_server", lambda settings: started.append(settings))

    with caplog.at_level(logging.ERROR):
        assert entry.main(["--config", str(tmp_path / "config.yaml")]) == 1
    assert "Missing Google Sheets configuration" in caplog.text
    assert started == []


def test_cli_overrides_and_starts_server(tmp_path, monkeypatch):
    (tmp_path / "config.yaml").write_text("sheets:\n  sheet_id: abc\n  api_key: xyz\nlogging:\n  level: WARNING\n")
    for var in ("GOOGLE_SHEET_ID", "GOOGLE_API_KEY", "PORT", "LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    started = []
    monkeypatch.setattr("presence.api.run_api_server", lambda settings: started.append(settings))
    root_level = logging.getLogger().level

    try:
        assert entry.main(["--config", str(tmp_path / "config.yaml"), "--host", "127.0.0.1", "--port", "8123"]) == 0
    finally:
        logging.getLogger().setLevel(root_level)
    assert started[0].api.host == "127.0.0.1"
    assert started[0].api.port == 8123
    assert started[0].sheets.sheet_id == "abc"
