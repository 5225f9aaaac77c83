from chat_bridge.config.settings import BridgeSettings


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CHAT_BRIDGE_CONFIG_FILE", raising=False)
    s = BridgeSettings(_env_file=None)
    assert s.retry_base_delay_ms == 1000
    assert s.retry_max_attempts == 3
    assert s.retry_rate_limit_max_attempts == 5
    assert s.anthropic_version == "2023-06-01"
    assert s.context_truncation_strategy == "recent"


def test_yaml_config_file(monkeypatch, tmp_path):
    cfg = tmp_path / "bridge.yaml"
    cfg.write_text("retry_max_attempts: 6\nollama_base_url: http://gpu:11434\nlog_level: debug\n", encoding="utf-8")
    monkeypatch.setenv("CHAT_BRIDGE_CONFIG_FILE", str(cfg))
    s = BridgeSettings(_env_file=None)
    assert s.retry_max_attempts == 6
    assert s.ollama_base_url == "http://gpu:11434"
    assert s.log_level == "DEBUG"
    # 限流重试次数不低于普通重试次数
    assert s.retry_rate_limit_max_attempts == 6


def test_env_overrides_yaml(monkeypatch, tmp_path):
    cfg = tmp_path / "bridge.yaml"
    cfg.write_text("http_timeout: 10\n", encoding="utf-8")
    monkeypatch.setenv("CHAT_BRIDGE_CONFIG_FILE", str(cfg))
    monkeypatch.setenv("HTTP_TIMEOUT", "45")
    s = BridgeSettings(_env_file=None)
    assert s.http_timeout == 45.0


def test_broken_yaml_is_ignored(monkeypatch, tmp_path):
    cfg = tmp_path / "bridge.yaml"
    cfg.write_text("retry_max_attempts: [1, 2\n", encoding="utf-8")
    monkeypatch.setenv("CHAT_BRIDGE_CONFIG_FILE", str(cfg))
    monkeypatch.chdir(tmp_path)
    s = BridgeSettings(_env_file=None)
    assert s.retry_max_attempts == 3
