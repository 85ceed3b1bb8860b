"""
Configuration loading for the CLG MCP Server.

Configuration is a plain dictionary read from YAML, completed with defaults and
overridden by the environment variables the service has always been deployed with.
"""

import copy
import logging
import os
from typing import Any, Dict, Optional

import yaml

from clg_mcp.error_handling.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    'server_name': 'clg-mcp',
    'server_version': '1.0.0',
    'server_description': "Cyndi's List Genealogy MCP Server",
    'protocol_version': '2024-11-05',
    'environment': 'development',
    'debug': False,
    'http': {
        'host': '0.0.0.0',
        'port': 8787,
        'stream_path': '/sse',
        'default_path': '/',
    },
    'auth': {
        'token': None,
        'tokens': [],
    },
    'sse': {
        'heartbeat_interval_seconds': 30,
        # Idle threshold is heartbeat_interval * idle_multiplier
        'idle_multiplier': 3,
        'max_connections': 100,
        'queue_maxsize': 256,
    },
    'rate_limit': {
        'enabled': True,
        'requests_per_minute': 30,
        'max_clients': 10000,
    },
    'provider': {
        'type': 'static',
        'base_url': 'https://www.cyndislist.com',
        'user_agent': 'CLG-MCP/1.0.0 (Genealogy Research Tool)',
        'timeout_seconds': 30,
        'max_search_results': 50,
    },
    'cache': {
        'enabled': False,
        'ttl_seconds': 1800,
        'max_size': 1000,
    },
    'logging': {
        'level': 'INFO',
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        'mask_sensitive': True,
    },
}


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _as_number(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"Environment variable {name} must be numeric, got {value!r}", original_exception=e)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(config: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Overlay the deployment environment variables onto a config dictionary."""
    env = os.environ if environ is None else environ
    config = copy.deepcopy(config)

    if env.get('MCP_AUTH_TOKEN'):
        config['auth']['token'] = env['MCP_AUTH_TOKEN']
    if env.get('MCP_AUTH_TOKENS'):
        config['auth']['tokens'] = env['MCP_AUTH_TOKENS']

    config['environment'] = env.get('ENVIRONMENT') or config['environment']
    config['server_name'] = env.get('MCP_SERVER_NAME') or config['server_name']
    config['server_version'] = env.get('MCP_SERVER_VERSION') or config['server_version']
    config['protocol_version'] = env.get('MCP_PROTOCOL_VERSION') or config['protocol_version']
    if env.get('DEBUG_MODE'):
        config['debug'] = _as_bool(env['DEBUG_MODE'])

    if env.get('SSE_HEARTBEAT_INTERVAL'):
        config['sse']['heartbeat_interval_seconds'] = _as_number('SSE_HEARTBEAT_INTERVAL', env['SSE_HEARTBEAT_INTERVAL']) / 1000
    if env.get('SSE_MAX_CONNECTIONS'):
        config['sse']['max_connections'] = int(_as_number('SSE_MAX_CONNECTIONS', env['SSE_MAX_CONNECTIONS']))

    if env.get('RATE_LIMIT_ENABLED'):
        config['rate_limit']['enabled'] = _as_bool(env['RATE_LIMIT_ENABLED'])
    if env.get('RATE_LIMIT_REQUESTS_PER_MINUTE'):
        config['rate_limit']['requests_per_minute'] = int(
            _as_number('RATE_LIMIT_REQUESTS_PER_MINUTE', env['RATE_LIMIT_REQUESTS_PER_MINUTE'])
        )

    if env.get('REQUEST_TIMEOUT'):
        config['provider']['timeout_seconds'] = _as_number('REQUEST_TIMEOUT', env['REQUEST_TIMEOUT']) / 1000
    if env.get('USER_AGENT'):
        config['provider']['user_agent'] = env['USER_AGENT']
    if env.get('MAX_SEARCH_RESULTS'):
        config['provider']['max_search_results'] = int(_as_number('MAX_SEARCH_RESULTS', env['MAX_SEARCH_RESULTS']))

    if env.get('CACHE_ENABLED'):
        config['cache']['enabled'] = _as_bool(env['CACHE_ENABLED'])
    if env.get('CACHE_TTL_SEARCH'):
        config['cache']['ttl_seconds'] = _as_number('CACHE_TTL_SEARCH', env['CACHE_TTL_SEARCH'])

    return config


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check value ranges and normalize the credential fields.

    Raises:
        ConfigurationError: If a value is out of range
    """
    tokens = config['auth'].get('tokens') or []
    if isinstance(tokens, str):
        tokens = [token.strip() for token in tokens.split(',')]
    config['auth']['tokens'] = [token for token in tokens if token]

    sse = config['sse']
    if sse['heartbeat_interval_seconds'] <= 0:
        raise ConfigurationError("sse.heartbeat_interval_seconds must be positive")
    if sse['idle_multiplier'] < 1:
        raise ConfigurationError("sse.idle_multiplier must be at least 1")
    if sse['max_connections'] < 1:
        raise ConfigurationError("sse.max_connections must be at least 1")
    if config['rate_limit']['requests_per_minute'] < 1:
        raise ConfigurationError("rate_limit.requests_per_minute must be at least 1")
    if config['provider']['type'] not in ('static', 'http'):
        raise ConfigurationError(f"Unknown provider type: {config['provider']['type']}")

    http = config['http']
    for key in ('stream_path', 'default_path'):
        if not str(http[key]).startswith('/'):
            raise ConfigurationError(f"http.{key} must start with '/'")
    if http['stream_path'] == http['default_path']:
        raise ConfigurationError("http.stream_path and http.default_path must differ")
    return config


def load_config(config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to the configuration file, or None for defaults only
        environ: Environment mapping (defaults to os.environ)

    Returns:
        The complete configuration dictionary

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    file_config: Dict[str, Any] = {}
    if config_path:
        if not os.path.exists(config_path):
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        try:
            with open(config_path, 'r') as f:
                file_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}", original_exception=e)
        if not isinstance(file_config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")
        logger.info(f"Configuration loaded from {config_path}")

    config = _merge(DEFAULT_CONFIG, file_config)
    config = apply_env_overrides(config, environ)
    return validate_config(config)
