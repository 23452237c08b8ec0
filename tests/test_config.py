import pytest

from dive.config import DEFAULT_BASE_URL, DatasourceConfig


def test_defaults():
    config = DatasourceConfig()

    assert config.base_url == DEFAULT_BASE_URL
    assert config.max_concurrency == 10
    assert config.rate_per_sec is None
    assert config.max_retries == 5
    assert config.resolve_worker
    assert not config.throttle_on_429


def test_trailing_slash_is_stripped():
    assert DatasourceConfig(base_url="https://archive.example/net/").base_url == (
        "https://archive.example/net"
    )


@pytest.mark.parametrize(
    "kwargs",
    [
        {"base_url": ""},
        {"max_concurrency": 0},
        {"rate_per_sec": 0},
        {"burst": 0},
        {"max_retries": -1},
        {"backoff_base": -0.5},
        {"request_timeout": 0},
        {"chunk_size": 0},
    ],
)
def test_invalid_values_are_rejected(kwargs):
    with pytest.raises(ValueError):
        DatasourceConfig(**kwargs)


def test_config_is_frozen():
    config = DatasourceConfig()

    with pytest.raises(AttributeError):
        config.max_concurrency = 3


def test_from_env(monkeypatch):
    monkeypatch.setenv("DIVE_BASE_URL", "https://archive.example/eth")
    monkeypatch.setenv("DIVE_MAX_CONCURRENCY", "4")
    monkeypatch.setenv("DIVE_RATE_PER_SEC", "12.5")
    monkeypatch.setenv("DIVE_BURST", "3")
    monkeypatch.setenv("DIVE_RESOLVE_WORKER", "0")
    monkeypatch.setenv("DIVE_THROTTLE_ON_429", "true")
    monkeypatch.setenv("DIVE_CHUNK_SIZE", "500")

    config = DatasourceConfig.from_env(max_retries=1)

    assert config.base_url == "https://archive.example/eth"
    assert config.max_concurrency == 4
    assert config.rate_per_sec == 12.5
    assert config.burst == 3
    assert not config.resolve_worker
    assert config.throttle_on_429
    assert config.chunk_size == 500
    assert config.max_retries == 1


def test_from_env_defaults(monkeypatch):
    for name in ("BASE_URL", "RATE_PER_SEC", "CHUNK_SIZE", "MAX_CONCURRENCY"):
        monkeypatch.delenv("DIVE_" + name, raising=False)

    config = DatasourceConfig.from_env()

    assert config.base_url == DEFAULT_BASE_URL
    assert config.rate_per_sec is None
    assert config.chunk_size is None
