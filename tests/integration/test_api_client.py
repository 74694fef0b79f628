import asyncio
import base64
import json
from typing import Callable, List, Optional

import httpx
import pytest

from zed_sync.auth.token_manager import TokenManager
from zed_sync.auth.token_store import MemoryTokenStore
from zed_sync.config.config_manager import Settings
from zed_sync.core.api_client import DEFAULT_HORSE_TYPES, TokenMissingError, ZedApiClient

NOW = 1_760_000_000
API_BASE = 'https://api.zed.test'
PROXY_BASE = 'http://localhost:3000/zed'


def _make_token(exp: int) -> str:
    def enc(obj) -> str:
        return base64.urlsafe_b64encode(json.dumps(obj).encode('utf-8')).decode('ascii').rstrip('=')
    return f"{enc({'alg': 'HS256'})}.{enc({'exp': exp})}.sig"


class _Recorder:
    """记录发往上游的请求"""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


def _fail_if_called(request: httpx.Request) -> httpx.Response:  # pragma: no cover - 被调用时测试应失败
    raise AssertionError(f'Unexpected request to {request.url}')


@pytest.fixture()
def token_manager() -> TokenManager:
    return TokenManager(MemoryTokenStore(), clock=lambda: NOW)


@pytest.fixture()
def valid_token(token_manager: TokenManager) -> str:
    token = _make_token(NOW + 3600)
    assert token_manager.set_token(token) is True
    return token


def _call(token_manager: TokenManager, handler, operation: str, *args, settings: Optional[Settings] = None):
    recorder = _Recorder(handler)

    async def scenario():
        client = ZedApiClient(
            token_manager,
            settings or Settings(api_base=API_BASE, proxy_base=PROXY_BASE),
            transport=httpx.MockTransport(recorder),
        )
        async with client:
            return await getattr(client, operation)(*args)

    return asyncio.run(scenario()), recorder.requests


def test_connection_without_token_skips_network(token_manager: TokenManager) -> None:
    outcome, requests = _call(token_manager, _fail_if_called, 'test_connection')

    assert outcome.success is False
    assert outcome.severity == 'error'
    assert '未设置' in outcome.message
    assert requests == []


def test_connection_with_expired_token_skips_network(token_manager: TokenManager) -> None:
    token_manager.set_token(_make_token(NOW + 60))

    outcome, requests = _call(token_manager, _fail_if_called, 'test_connection')

    assert outcome.success is False
    assert '过期' in outcome.message
    assert requests == []


def test_connection_success_welcomes_user(token_manager: TokenManager, valid_token: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={'username': 'SilverStable', 'id': 7})

    outcome, requests = _call(token_manager, handler, 'test_connection')

    assert outcome.success is True
    assert outcome.severity == 'success'
    assert 'SilverStable' in outcome.message
    assert outcome.data == {'username': 'SilverStable', 'id': 7}

    sent = requests[0]
    assert str(sent.url) == f'{API_BASE}/v1/me'
    assert sent.method == 'GET'
    assert sent.headers['Authorization'] == f'Bearer {valid_token}'
    assert sent.headers['Content-Type'] == 'application/json'


def test_connection_success_without_username(token_manager: TokenManager, valid_token: str) -> None:
    outcome, _ = _call(token_manager, lambda r: httpx.Response(200, json={}), 'test_connection')

    assert outcome.success is True
    assert 'ZED Champions 用户' in outcome.message


def test_connection_401_clears_token(token_manager: TokenManager, valid_token: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={'message': 'jwt expired'})

    outcome, requests = _call(token_manager, handler, 'test_connection')

    assert outcome.success is False
    assert '重新获取' in outcome.message
    assert len(requests) == 1
    assert token_manager.get_token() is None
    assert token_manager.is_token_expired() is True


def test_connection_error_uses_server_error_field(token_manager: TokenManager, valid_token: str) -> None:
    outcome, _ = _call(token_manager, lambda r: httpx.Response(403, json={'error': 'forbidden'}), 'test_connection')

    assert outcome.success is False
    assert outcome.message == 'forbidden'
    assert token_manager.get_token() == valid_token


def test_connection_error_falls_back_to_status_text(token_manager: TokenManager, valid_token: str) -> None:
    outcome, _ = _call(token_manager, lambda r: httpx.Response(500, text='<html>oops</html>'), 'test_connection')

    assert outcome.success is False
    assert outcome.message == 'Error 500: Internal Server Error'


def test_fetch_horse_requires_id(token_manager: TokenManager, valid_token: str) -> None:
    for horse_id in ('', '   ', None):
        outcome, requests = _call(token_manager, _fail_if_called, 'fetch_horse', horse_id)
        assert outcome.success is False
        assert requests == []


def test_fetch_horse_not_found(token_manager: TokenManager, valid_token: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={'message': 'not found'})

    outcome, requests = _call(token_manager, handler, 'fetch_horse', '123')

    assert outcome.success is False
    assert outcome.message == 'not found'
    assert requests[0].url.path == '/v1/horses/123'
    # 404 不影响令牌
    assert token_manager.get_token() == valid_token


def test_fetch_horse_success(token_manager: TokenManager, valid_token: str) -> None:
    horse = {'id': 'abc-1', 'name': 'Midnight Comet', 'bloodline': 'Nakamoto', 'gender': 'Colt'}

    outcome, requests = _call(token_manager, lambda r: httpx.Response(200, json=horse), 'fetch_horse', ' abc-1 ')

    assert outcome.success is True
    assert outcome.data == horse
    assert requests[0].url.path == '/v1/horses/abc-1'


def test_fetch_horse_quotes_identifier(token_manager: TokenManager, valid_token: str) -> None:
    outcome, requests = _call(token_manager, lambda r: httpx.Response(200, json={}), 'fetch_horse', 'a/b')

    assert outcome.success is True
    assert requests[0].url.raw_path == b'/v1/horses/a%2Fb'


def test_fetch_horse_401_clears_token(token_manager: TokenManager, valid_token: str) -> None:
    outcome, _ = _call(token_manager, lambda r: httpx.Response(401), 'fetch_horse', '123')

    assert outcome.success is False
    assert token_manager.get_token() is None


def test_fetch_horse_invalid_json(token_manager: TokenManager, valid_token: str) -> None:
    outcome, _ = _call(token_manager, lambda r: httpx.Response(200, text='not json'), 'fetch_horse', '123')

    assert outcome.success is False
    assert 'JSON' in outcome.message


@pytest.mark.parametrize('kind, path', [
    ('racing', '/v1/stables/racing'),
    ('breeding', '/v1/stables/breeding'),
    ('Racing', '/v1/stables/racing'),
])
def test_fetch_stable_endpoints(token_manager: TokenManager, valid_token: str, kind: str, path: str) -> None:
    horses = [{'id': '1', 'name': 'A'}, {'id': '2', 'name': 'B'}]

    outcome, requests = _call(token_manager, lambda r: httpx.Response(200, json={'horses': horses}), 'fetch_stable', kind)

    assert outcome.success is True
    assert outcome.data == horses
    assert requests[0].url.path == path


@pytest.mark.parametrize('body', [{}, {'horses': None}, {'horses': 'oops'}, []])
def test_fetch_stable_defaults_to_empty_list(token_manager: TokenManager, valid_token: str, body) -> None:
    outcome, _ = _call(token_manager, lambda r: httpx.Response(200, json=body), 'fetch_stable', 'racing')

    assert outcome.success is True
    assert outcome.data == []


def test_fetch_stable_rejects_unknown_kind(token_manager: TokenManager, valid_token: str) -> None:
    outcome, requests = _call(token_manager, _fail_if_called, 'fetch_stable', 'retired')

    assert outcome.success is False
    assert requests == []


def test_fetch_stable_error_message(token_manager: TokenManager, valid_token: str) -> None:
    outcome, _ = _call(token_manager, lambda r: httpx.Response(503, json={'message': 'maintenance'}), 'fetch_stable', 'breeding')

    assert outcome.success is False
    assert outcome.message == 'maintenance'


def test_fetch_stable_without_token_skips_network(token_manager: TokenManager) -> None:
    outcome, requests = _call(token_manager, _fail_if_called, 'fetch_stable', 'racing')

    assert outcome.success is False
    assert requests == []


def test_proxy_transport_error_retries_direct_once(token_manager: TokenManager, valid_token: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == 'localhost':
            raise httpx.ConnectError('proxy down', request=request)
        return httpx.Response(200, json={'id': '123'})

    settings = Settings(api_base=API_BASE, proxy_base=PROXY_BASE, use_proxy=True)
    outcome, requests = _call(token_manager, handler, 'fetch_horse', '123', settings=settings)

    assert outcome.success is True
    assert [str(r.url) for r in requests] == [
        f'{PROXY_BASE}/v1/horses/123',
        f'{API_BASE}/v1/horses/123',
    ]
    assert requests[1].headers['Authorization'] == f'Bearer {valid_token}'


def test_proxy_timeout_counts_as_transport_error(token_manager: TokenManager, valid_token: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == 'localhost':
            raise httpx.ReadTimeout('timed out', request=request)
        return httpx.Response(200, json={'username': 'direct'})

    settings = Settings(api_base=API_BASE, proxy_base=PROXY_BASE, use_proxy=True)
    outcome, requests = _call(token_manager, handler, 'test_connection', settings=settings)

    assert outcome.success is True
    assert len(requests) == 2


def test_proxy_and_direct_failure_is_single_retry(token_manager: TokenManager, valid_token: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError('unreachable', request=request)

    settings = Settings(api_base=API_BASE, proxy_base=PROXY_BASE, use_proxy=True)
    outcome, requests = _call(token_manager, handler, 'fetch_stable', 'racing', settings=settings)

    assert outcome.success is False
    assert '网络请求失败' in outcome.message
    assert len(requests) == 2


def test_http_error_status_through_proxy_is_not_retried(token_manager: TokenManager, valid_token: str) -> None:
    settings = Settings(api_base=API_BASE, proxy_base=PROXY_BASE, use_proxy=True)
    outcome, requests = _call(
        token_manager, lambda r: httpx.Response(502, text='Bad gateway'), 'fetch_horse', '1', settings=settings
    )

    assert outcome.success is False
    assert outcome.message == 'Error 502: Bad Gateway'
    assert len(requests) == 1


def test_direct_transport_error_is_not_retried(token_manager: TokenManager, valid_token: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError('unreachable', request=request)

    outcome, requests = _call(token_manager, handler, 'test_connection')

    assert outcome.success is False
    assert len(requests) == 1


def test_slow_proxy_hits_overall_deadline_and_retries_direct(token_manager: TokenManager, valid_token: str) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == 'localhost':
            await asyncio.sleep(5)
        return httpx.Response(200, json={'username': 'direct'})

    settings = Settings(api_base=API_BASE, proxy_base=PROXY_BASE, use_proxy=True, timeout=0.05)
    outcome, requests = _call(token_manager, handler, 'test_connection', settings=settings)

    assert outcome.success is True
    assert outcome.data == {'username': 'direct'}
    assert [r.url.host for r in requests] == ['localhost', 'api.zed.test']


def test_slow_direct_request_fails_after_deadline(token_manager: TokenManager, valid_token: str) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={})

    settings = Settings(api_base=API_BASE, proxy_base=PROXY_BASE, timeout=0.05)
    outcome, requests = _call(token_manager, handler, 'fetch_horse', '7', settings=settings)

    assert outcome.success is False
    assert '请求超时' in outcome.message
    assert len(requests) == 1


def test_request_build_error_becomes_failed_outcome(token_manager: TokenManager, valid_token: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise UnicodeEncodeError('ascii', 'é', 0, 1, 'ordinal not in range(128)')

    for operation, args in (('test_connection', ()), ('fetch_horse', ('1',)), ('fetch_stable', ('racing',))):
        outcome, requests = _call(token_manager, handler, operation, *args)

        assert outcome.success is False
        assert '请求构建失败' in outcome.message
        assert len(requests) == 1


def test_stored_token_with_non_ascii_segment_skips_network() -> None:
    payload = _make_token(NOW + 3600).split('.')[1]
    manager = TokenManager(
        MemoryTokenStore({'zed_auth_token': f'héader.{payload}.sig'}), clock=lambda: NOW
    )

    outcome, requests = _call(manager, _fail_if_called, 'test_connection')

    assert outcome.success is False
    assert '已过期' in outcome.message
    assert requests == []


def test_authorized_fetch_requires_token(token_manager: TokenManager) -> None:
    with pytest.raises(TokenMissingError):
        _call(token_manager, _fail_if_called, 'authorized_fetch', '/v1/me')


def test_authorized_fetch_merges_headers(token_manager: TokenManager, valid_token: str) -> None:
    async def scenario():
        recorder = _Recorder(lambda r: httpx.Response(201, json={'ok': True}))
        client = ZedApiClient(token_manager, Settings(api_base=API_BASE), transport=httpx.MockTransport(recorder))
        async with client:
            response = await client.authorized_fetch(
                'v1/notes', method='POST', data={'text': 'hi'}, headers={'X-Trace': 'abc'}
            )
        return response, recorder.requests

    response, requests = asyncio.run(scenario())

    assert response.status_code == 201
    sent = requests[0]
    assert str(sent.url) == f'{API_BASE}/v1/notes'
    assert sent.method == 'POST'
    assert sent.headers['X-Trace'] == 'abc'
    assert sent.headers['Authorization'] == f'Bearer {valid_token}'
    assert json.loads(sent.content) == {'text': 'hi'}


def test_fetch_horse_types(token_manager: TokenManager, valid_token: str) -> None:
    types, requests = _call(
        token_manager, lambda r: httpx.Response(200, json={'types': ['racing', 'breeding', 'retired']}), 'fetch_horse_types'
    )

    assert types == ['racing', 'breeding', 'retired']
    assert requests[0].url.path == '/v1/horse-types'


@pytest.mark.parametrize('response', [
    httpx.Response(500),
    httpx.Response(200, json={}),
    httpx.Response(200, json={'types': []}),
])
def test_fetch_horse_types_falls_back_to_defaults(token_manager: TokenManager, valid_token: str, response) -> None:
    types, _ = _call(token_manager, lambda r: response, 'fetch_horse_types')

    assert types == DEFAULT_HORSE_TYPES


def test_fetch_horse_types_without_token(token_manager: TokenManager) -> None:
    types, requests = _call(token_manager, _fail_if_called, 'fetch_horse_types')

    assert types == DEFAULT_HORSE_TYPES
    assert requests == []
