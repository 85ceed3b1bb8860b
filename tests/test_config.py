import pytest

from clg_mcp.config import DEFAULT_CONFIG, apply_env_overrides, load_config
from clg_mcp.error_handling.exceptions import ConfigurationError


def test_defaults_without_file():
    config = load_config(environ={})
    assert config['sse']['heartbeat_interval_seconds'] == 30
    assert config['sse']['max_connections'] == 100
    assert config['rate_limit']['requests_per_minute'] == 30
    assert config['rate_limit']['max_clients'] == 10000
    assert config['http']['stream_path'] == '/sse'
    assert config['auth']['tokens'] == []
    # Defaults are never mutated by loading
    assert DEFAULT_CONFIG['auth']['tokens'] == []


def test_yaml_file_is_merged_over_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "http:\n"
        "  port: 9000\n"
        "auth:\n"
        "  token: from-file\n"
        "sse:\n"
        "  heartbeat_interval_seconds: 5\n"
    )
    config = load_config(str(path), environ={})
    assert config['http']['port'] == 9000
    assert config['http']['host'] == '0.0.0.0'
    assert config['auth']['token'] == 'from-file'
    assert config['sse']['heartbeat_interval_seconds'] == 5
    assert config['sse']['idle_multiplier'] == 3


def test_environment_overrides():
    """Deployment variables win over file values; millisecond values are converted to seconds."""
    config = load_config(environ={
        'MCP_AUTH_TOKEN': 'env-token',
        'MCP_AUTH_TOKENS': 'a,b , c',
        'SSE_HEARTBEAT_INTERVAL': '15000',
        'SSE_MAX_CONNECTIONS': '12',
        'REQUEST_TIMEOUT': '2500',
        'MAX_SEARCH_RESULTS': '25',
        'RATE_LIMIT_ENABLED': 'false',
        'DEBUG_MODE': 'true',
    })
    assert config['auth']['token'] == 'env-token'
    assert config['auth']['tokens'] == ['a', 'b', 'c']
    assert config['sse']['heartbeat_interval_seconds'] == 15
    assert config['sse']['max_connections'] == 12
    assert config['provider']['timeout_seconds'] == 2.5
    assert config['provider']['max_search_results'] == 25
    assert config['rate_limit']['enabled'] is False
    assert config['debug'] is True


def test_apply_env_overrides_does_not_mutate_input():
    original = load_config(environ={})
    apply_env_overrides(original, {'MCP_AUTH_TOKEN': 'x'})
    assert original['auth']['token'] is None


def test_missing_file():
    with pytest.raises(ConfigurationError, match="not found"):
        load_config("/nonexistent/config.yaml", environ={})


def test_invalid_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("http: [unclosed\n")
    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        load_config(str(path), environ={})


def test_non_numeric_environment_value():
    with pytest.raises(ConfigurationError):
        load_config(environ={'SSE_HEARTBEAT_INTERVAL': 'often'})


@pytest.mark.parametrize("yaml_text", [
    "sse:\n  heartbeat_interval_seconds: 0\n",
    "sse:\n  max_connections: 0\n",
    "provider:\n  type: ftp\n",
    "http:\n  stream_path: sse\n",
    "http:\n  stream_path: /rpc\n  default_path: /rpc\n",
])
def test_out_of_range_values(tmp_path, yaml_text):
    path = tmp_path / "config.yaml"
    path.write_text(yaml_text)
    with pytest.raises(ConfigurationError):
        load_config(str(path), environ={})
