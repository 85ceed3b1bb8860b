import asyncio
import json
from typing import Any, Dict

import pytest
from unittest.mock import AsyncMock, Mock

from clg_mcp.config import load_config
from clg_mcp.core.mcp_server import ProtocolServer

TOKEN = "test-token"
AUTH = {'Authorization': f"Bearer {TOKEN}"}

# --- Helpers ---

def build_config(**sections: Dict[str, Any]) -> Dict[str, Any]:
    """Default configuration with a bearer secret, plus per-section overrides."""
    config = load_config(environ={})
    config['auth']['token'] = TOKEN
    for section, values in sections.items():
        config[section].update(values)
    return config


async def read_event(response, timeout: float = 5) -> Dict[str, str]:
    """Read one SSE frame, skipping comment (ping) lines."""
    event: Dict[str, str] = {}
    while True:
        raw = await asyncio.wait_for(response.content.readline(), timeout=timeout)
        if not raw:
            raise EOFError("stream closed")
        line = raw.decode('utf-8').rstrip('\r\n')
        if not line:
            if event:
                return event
            continue
        if line.startswith(':'):
            continue
        field, _, value = line.partition(':')
        event[field] = value[1:] if value.startswith(' ') else value


async def wait_for_sessions(client, expected: int, timeout: float = 3) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        body = await (await client.get('/health')).json()
        if body['activeSessionCount'] == expected:
            return
        if loop.time() > deadline:
            raise AssertionError(f"expected {expected} sessions, health reports {body}")
        await asyncio.sleep(0.02)

# --- Test Fixtures ---

@pytest.fixture
def make_client(aiohttp_client):
    """Factory returning (server, test client) for a given provider and config overrides."""
    async def factory(provider=None, **sections):
        server = ProtocolServer(build_config(**sections), provider=provider)
        client = await aiohttp_client(server.app)
        return server, client
    return factory


@pytest.fixture
async def client(make_client):
    _, client = await make_client()
    return client


async def open_stream(client):
    response = await client.get('/sse', headers=AUTH)
    assert response.status == 200
    assert response.headers['Content-Type'].startswith('text/event-stream')
    connected = await read_event(response)
    return response, connected

# --- Unauthenticated endpoints ---

async def test_health_reports_session_count(client):
    response = await client.get('/health')
    assert response.status == 200
    assert await response.json() == {'status': 'healthy', 'activeSessionCount': 0}


async def test_preflight(client):
    response = await client.options('/sse')
    assert response.status == 200
    assert response.headers['Access-Control-Allow-Origin'] == '*'
    assert 'POST' in response.headers['Access-Control-Allow-Methods']
    assert 'Authorization' in response.headers['Access-Control-Allow-Headers']
    assert await response.read() == b''


async def test_service_info(client):
    response = await client.get('/')
    body = await response.json()
    assert response.status == 200
    assert body['name'] == 'clg-mcp'
    assert response.headers['Access-Control-Allow-Origin'] == '*'


async def test_unknown_path(client):
    response = await client.get('/nope')
    assert response.status == 404

# --- Authentication ---

@pytest.mark.parametrize("headers,reason,message", [
    ({}, "missing credential", "Missing Authorization header"),
    ({'Authorization': 'test-token'}, "malformed credential", "Invalid Authorization header format. Expected: Bearer <token>"),
    ({'Authorization': 'Bearer wrong'}, "invalid credential", "Invalid authentication token"),
])
async def test_rpc_rejects_bad_credentials(client, headers, reason, message):
    response = await client.post('/', data=json.dumps({'jsonrpc': '2.0', 'id': 1, 'method': 'catalog/list'}), headers=headers)
    assert response.status == 401
    assert response.headers['WWW-Authenticate'] == 'Bearer'
    body = await response.json()
    assert body['error'] == 'Unauthorized'
    assert body['reason'] == reason
    assert body['message'] == message


async def test_stream_open_requires_credentials(client):
    response = await client.get('/sse')
    assert response.status == 401
    assert (await response.json())['reason'] == "missing credential"


async def test_public_mode(make_client):
    _, client = await make_client(auth={'token': None, 'tokens': []})
    response = await client.post('/', data=json.dumps({'jsonrpc': '2.0', 'id': 1, 'method': 'catalog/list'}))
    assert response.status == 200


async def test_multi_secret_list(make_client):
    _, client = await make_client(auth={'token': 'primary', 'tokens': ['secondary']})
    response = await client.post(
        '/',
        data=json.dumps({'jsonrpc': '2.0', 'id': 1, 'method': 'catalog/list'}),
        headers={'Authorization': 'Bearer secondary'},
    )
    assert response.status == 200

# --- One-shot path ---

async def test_catalog_list(client):
    """Valid credential + catalog/list returns every published tool."""
    response = await client.post('/', data=json.dumps({'jsonrpc': '2.0', 'id': 1, 'method': 'catalog/list'}), headers=AUTH)
    assert response.status == 200
    body = await response.json()
    assert body['id'] == 1
    assert len(body['result']['tools']) == 5
    assert 'error' not in body


async def test_tool_invocation(client):
    payload = {
        'jsonrpc': '2.0', 'id': 'call-1', 'method': 'tool/invoke',
        'params': {'name': 'search_genealogy_resources', 'arguments': {'query': 'census'}},
    }
    response = await client.post('/', data=json.dumps(payload), headers=AUTH)
    body = await response.json()
    assert body['id'] == 'call-1'
    result = json.loads(body['result']['content'][0]['text'])
    assert result['resources'][0]['id'] == 'census/us/1940'


async def test_method_not_found(client):
    response = await client.post('/', data=json.dumps({'jsonrpc': '2.0', 'id': 3, 'method': 'foo/bar'}), headers=AUTH)
    assert response.status == 200
    body = await response.json()
    assert body == {'jsonrpc': '2.0', 'id': 3, 'error': {'code': -32601, 'message': 'Method not found', 'data': {'method': 'foo/bar'}}}


async def test_parse_error(client):
    response = await client.post('/', data=b'{"jsonrpc": ', headers=AUTH)
    assert response.status == 400
    body = await response.json()
    assert body['id'] is None
    assert body['error']['code'] == -32700


@pytest.mark.parametrize("path", ['/', '/sse'])
async def test_invalid_utf8_is_a_parse_error(client, path):
    response = await client.post(path, data=b'{"jsonrpc": "2.0", "id": 1, "method": "\xff"}', headers=AUTH)
    assert response.status == 400
    body = await response.json()
    assert body['id'] is None
    assert body['error']['code'] == -32700


async def test_invalid_request_keeps_id(client):
    response = await client.post('/', data=json.dumps({'jsonrpc': '2.0', 'id': 8}), headers=AUTH)
    assert response.status == 400
    body = await response.json()
    assert body['id'] == 8
    assert body['error']['code'] == -32600


async def test_tool_failure_is_a_structured_error(make_client):
    provider = AsyncMock()
    provider.invoke.side_effect = RuntimeError("upstream timeout")
    _, client = await make_client(provider=provider)
    payload = {'jsonrpc': '2.0', 'id': 5, 'method': 'tool/invoke', 'params': {'name': 'browse_categories', 'arguments': {}}}
    response = await client.post('/', data=json.dumps(payload), headers=AUTH)
    assert response.status == 200
    body = await response.json()
    assert body['id'] == 5
    assert body['error']['code'] == -32603
    assert 'upstream timeout' in body['error']['message']


async def test_stream_path_without_session_answers_directly(client):
    response = await client.post('/sse', data=json.dumps({'jsonrpc': '2.0', 'id': 2, 'method': 'catalog/list'}), headers=AUTH)
    assert response.status == 200
    body = await response.json()
    assert body['id'] == 2
    assert len(body['result']['tools']) == 5

# --- Stream sessions ---

async def test_stream_connected_frame(client):
    response, connected = await open_stream(client)
    assert connected['event'] == 'connected'
    assert connected['id'] == '0'
    data = json.loads(connected['data'])
    assert data['sessionId'].startswith('conn_')
    assert data['protocol'] == 'sse'
    await wait_for_sessions(client, 1)
    response.close()


async def test_stream_request_delivered_as_frame(client):
    """A request posted with a live session id is answered on that session's stream."""
    stream, connected = await open_stream(client)
    session_id = json.loads(connected['data'])['sessionId']

    payload = {'jsonrpc': '2.0', 'id': 1, 'method': 'catalog/list', 'sessionId': session_id}
    response = await client.post('/sse', data=json.dumps(payload), headers=AUTH)
    assert response.status == 200
    assert await response.json() == {'status': 'sent'}

    frame = await read_event(stream)
    assert frame['event'] == 'tool-response'
    assert frame['id'] == '1'
    data = json.loads(frame['data'])
    assert data['id'] == 1
    assert data['sessionId'] == session_id
    assert len(data['result']['tools']) == 5
    stream.close()


async def test_stream_tool_failure_delivered_as_error_frame(make_client):
    provider = AsyncMock()
    provider.invoke.side_effect = RuntimeError("upstream timeout")
    _, client = await make_client(provider=provider)
    stream, connected = await open_stream(client)
    session_id = json.loads(connected['data'])['sessionId']

    payload = {
        'jsonrpc': '2.0', 'id': 'x-9', 'method': 'tool/invoke', 'connectionId': session_id,
        'params': {'name': 'browse_categories', 'arguments': {}},
    }
    response = await client.post('/sse', data=json.dumps(payload), headers=AUTH)
    assert response.status == 200

    frame = await read_event(stream)
    data = json.loads(frame['data'])
    assert frame['id'] == 'x-9'
    assert data['error']['code'] == -32603
    assert 'result' not in data
    stream.close()


async def test_unknown_session(client):
    payload = {'jsonrpc': '2.0', 'id': 4, 'method': 'catalog/list', 'sessionId': 'conn_0_doesnotexist'}
    response = await client.post('/sse', data=json.dumps(payload), headers=AUTH)
    assert response.status == 400
    body = await response.json()
    assert body['id'] == 4
    assert body['error']['code'] == -32001
    assert body['error']['message'] == 'Connection not found'
    # The miss never creates a session
    assert (await (await client.get('/health')).json())['activeSessionCount'] == 0


async def test_session_limit(make_client):
    _, client = await make_client(sse={'max_connections': 1})
    stream, _ = await open_stream(client)
    response = await client.get('/sse', headers=AUTH)
    assert response.status == 503
    assert (await response.json())['error']['code'] == -32003
    stream.close()


async def test_heartbeat_frames(make_client):
    _, client = await make_client(sse={'heartbeat_interval_seconds': 0.05})
    stream, _ = await open_stream(client)
    frame = await read_event(stream)
    assert frame['event'] == 'heartbeat'
    assert 'timestamp' in json.loads(frame['data'])
    stream.close()


async def test_disconnected_client_is_removed(make_client):
    """Once the client goes away, the next heartbeat write fails and the session is dropped."""
    _, client = await make_client(sse={'heartbeat_interval_seconds': 0.05})
    stream, _ = await open_stream(client)
    await wait_for_sessions(client, 1)
    stream.close()
    await wait_for_sessions(client, 0)


async def test_shutdown_closes_sessions(make_client):
    server, client = await make_client()
    stream, _ = await open_stream(client)
    await server.registry.stop()
    with pytest.raises(EOFError):
        await read_event(stream)
    assert len(server.registry) == 0


class GatedProvider:
    """Provider whose calls block until released. It has no close()."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def invoke(self, tool_name: str, arguments: Any) -> Dict[str, Any]:
        self.started.set()
        await self.release.wait()
        return {'tool': tool_name}


async def test_session_closed_during_dispatch(make_client):
    """A response finishing after its session closed is dropped without reviving the session."""
    provider = GatedProvider()
    server, client = await make_client(provider=provider)
    stream, connected = await open_stream(client)
    session_id = json.loads(connected['data'])['sessionId']

    payload = {
        'jsonrpc': '2.0', 'id': 6, 'method': 'tool/invoke', 'sessionId': session_id,
        'params': {'name': 'browse_categories', 'arguments': {}},
    }
    response = await client.post('/sse', data=json.dumps(payload), headers=AUTH)
    assert await response.json() == {'status': 'sent'}

    await asyncio.wait_for(provider.started.wait(), timeout=5)
    assert server.registry.close(session_id) is True
    provider.release.set()
    await asyncio.wait_for(asyncio.gather(*list(server._deliveries)), timeout=5)

    assert session_id not in server.registry
    assert len(server.registry) == 0
    with pytest.raises(EOFError):
        await read_event(stream)
    await wait_for_sessions(client, 0)

# --- Lifecycle ---

async def test_cleanup_with_provider_without_close():
    server = ProtocolServer(build_config(), provider=GatedProvider())
    await server._on_cleanup(server.app)


async def test_cleanup_closes_provider():
    provider = Mock(spec=['invoke', 'close'])
    server = ProtocolServer(build_config(), provider=provider)
    await server._on_cleanup(server.app)
    provider.close.assert_called_once_with()

    provider = AsyncMock()
    server = ProtocolServer(build_config(), provider=provider)
    await server._on_cleanup(server.app)
    provider.close.assert_awaited_once_with()
