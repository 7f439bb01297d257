from hashlink_platform.config import load_settings


def test_defaults(monkeypatch):
    for name in ("SERVER_ADDRESS", "BASE_URL", "DATABASE_DSN", "FILE_STORAGE_PATH",
                 "REQUEST_TIMEOUT", "DELETE_WORKERS", "DELETE_BATCH_SIZE"):
        monkeypatch.delenv(name, raising=False)
    cfg = load_settings()
    assert cfg.bind() == ("localhost", 8080)
    assert cfg.BASE_URL == "http://localhost:8080/"
    assert cfg.DATABASE_DSN == ""
    assert cfg.REQUEST_TIMEOUT == 2.0
    assert cfg.DELETE_WORKERS == 20
    assert cfg.DELETE_BATCH_SIZE == 3


def test_tuning_values_are_clamped(monkeypatch):
    monkeypatch.setenv("DELETE_WORKERS", "500")
    monkeypatch.setenv("DELETE_BATCH_SIZE", "0")
    cfg = load_settings()
    assert cfg.DELETE_WORKERS == 100
    assert cfg.DELETE_BATCH_SIZE == 1


def test_invalid_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("REQUEST_TIMEOUT", "soon")
    monkeypatch.setenv("DELETE_WORKERS", "many")
    cfg = load_settings()
    assert cfg.REQUEST_TIMEOUT == 2.0
    assert cfg.DELETE_WORKERS == 20


def test_bind_parses_server_address(monkeypatch):
    monkeypatch.setenv("SERVER_ADDRESS", "0.0.0.0:9000")
    assert load_settings().bind() == ("0.0.0.0", 9000)
    monkeypatch.setenv("SERVER_ADDRESS", ":9001")
    assert load_settings().bind() == ("localhost", 9001)
