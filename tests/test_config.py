import pytest

from kline_forecaster.config import load_config


def _write(tmp_path, text: str) -> str:
    p = tmp_path / "config.yaml"
    p.write_text(text, encoding="utf-8")
    return str(p)


def test_defaults_from_empty_file(tmp_path):
    cfg = load_config(_write(tmp_path, ""))
    assert cfg.feed.symbol == "BTCUSDT"
    assert cfg.feed.max_reconnect_attempts == 5
    assert cfg.store.capacity == 1000
    assert cfg.model.window_length == 20
    assert cfg.model.history_capacity == 100
    assert cfg.telegram.chat_ids == []


def test_sections_and_env_overrides(tmp_path, monkeypatch):
    path = _write(tmp_path, """
feed:
  symbol: ethusdt
  interval: 5m
model:
  window_length: 30
  scorer: "builtin:constant"
telegram:
  enabled: true
  chat_ids: [123]
""")
    monkeypatch.setenv("TELEGRAM_TOKEN", "abc")
    monkeypatch.setenv("FORECASTER_STORE_PATH", str(tmp_path / "bars"))
    cfg = load_config(path)
    assert cfg.feed.symbol == "ETHUSDT"
    assert cfg.feed.interval == "5m"
    assert cfg.model.window_length == 30
    assert cfg.telegram.token == "abc"
    assert cfg.telegram.chat_ids == ["123"]
    assert cfg.store.path == str(tmp_path / "bars")

    monkeypatch.setenv("TELEGRAM_CHAT_IDS", "1, 2,")
    assert load_config(path).telegram.chat_ids == ["1", "2"]


def test_store_smaller_than_window_is_rejected(tmp_path):
    path = _write(tmp_path, "store:\n  capacity: 10\nmodel:\n  window_length: 20\n")
    with pytest.raises(ValueError):
        load_config(path)


def test_unknown_key_is_rejected(tmp_path):
    with pytest.raises(TypeError):
        load_config(_write(tmp_path, "feed:\n  nope: 1\n"))
