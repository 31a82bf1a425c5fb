from voice_relay.config import CONFIG_ENV_VAR, DEFAULT_MODEL, VoiceRelayConfig


def test_missing_file_gives_defaults(tmp_path):
    config = VoiceRelayConfig.load(tmp_path / "absent.json")

    assert config.gateway.model == DEFAULT_MODEL
    assert config.turn.context_size == 10
    assert config.turn.context_window == 4
    assert config.transport.reconnect_delay_sec == 3.0
    assert config.server.port == 3000


def test_saved_file_is_loaded_back(tmp_path):
    path = tmp_path / "nested" / "relay.json"
    config = VoiceRelayConfig()
    config.persona.name = "Volt"
    config.turn.idle_prompt_sec = 45
    config.save(path)

    loaded = VoiceRelayConfig.load(path)
    assert loaded.persona.name == "Volt"
    assert loaded.turn.idle_prompt_sec == 45


def test_invalid_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "relay.json"
    path.write_text('{"turn": {"context_size": -3}}', encoding="utf-8")

    assert VoiceRelayConfig.load(path).turn.context_size == 10


def test_from_env(tmp_path, monkeypatch):
    path = tmp_path / "relay.json"
    path.write_text('{"transport": {"url": "ws://relay.example:8080/ws"}}', encoding="utf-8")

    monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
    assert VoiceRelayConfig.from_env().transport.url == "ws://relay.example:8080/ws"

    monkeypatch.delenv(CONFIG_ENV_VAR)
    assert VoiceRelayConfig.from_env().transport.url == "ws://127.0.0.1:3000/ws"
