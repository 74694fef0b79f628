#!/usr/bin/env python3
"""
ZED Champions API 客户端
负责附加 Bearer 令牌、可选代理转发、错误归一化
"""
import asyncio
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from ..auth.token_manager import TokenManager
from ..config.config_manager import Settings
from .outcome import Outcome

ACCOUNT_ENDPOINT = '/v1/me'
HORSE_ENDPOINT = '/v1/horses/{horse_id}'
HORSE_TYPES_ENDPOINT = '/v1/horse-types'
STABLE_ENDPOINTS = {
    'racing': '/v1/stables/racing',
    'breeding': '/v1/stables/breeding',
}
DEFAULT_HORSE_TYPES = ['racing', 'breeding']


class TokenMissingError(RuntimeError):
    """调用 authorized_fetch 前未设置令牌"""


class ZedApiClient:
    """ZED Champions API 客户端"""

    def __init__(
        self,
        token_manager: TokenManager,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        初始化客户端

        Args:
            token_manager: 令牌管理器（客户端只读取令牌，401 时清除）
            settings: 运行配置，默认使用 Settings()
            transport: 自定义 httpx 传输层，测试时传入 MockTransport
        """
        self.token_manager = token_manager
        self.settings = settings or Settings()
        self.client = self._create_async_client(transport)

    def _create_async_client(self, transport: Optional[httpx.AsyncBaseTransport]) -> httpx.AsyncClient:
        """创建并配置 httpx AsyncClient（单阶段超时，整体超时见 _send）"""
        timeout = httpx.Timeout(self.settings.timeout)
        return httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    def build_url(self, endpoint: str, direct: bool = False) -> str:
        """拼接目标地址，启用代理时走代理前缀"""
        if not endpoint.startswith('/'):
            endpoint = '/' + endpoint
        if self.settings.use_proxy and not direct:
            return f"{self.settings.proxy_base}{endpoint}"
        return f"{self.settings.api_base}{endpoint}"

    async def authorized_fetch(
        self,
        endpoint: str,
        method: str = 'GET',
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        发送带令牌的请求，返回原始响应

        走代理时若出现传输层错误（含超时），直连重试一次；
        直连也失败则异常向上抛出。

        Raises:
            TokenMissingError: 没有已保存的令牌
            httpx.TransportError: 网络错误或超时
        """
        token = self.token_manager.get_token()
        if not token:
            raise TokenMissingError("未设置 API 令牌")

        request_headers = dict(headers or {})
        request_headers['Authorization'] = f"Bearer {token}"
        request_headers['Content-Type'] = 'application/json'

        try:
            return await self._send(method, self.build_url(endpoint), request_headers, data)
        except httpx.TransportError as e:
            if not self.settings.use_proxy:
                raise
            print(f"代理请求失败，改为直连 API: {e!r}")
            return await self._send(method, self.build_url(endpoint, direct=True), request_headers, data)

    async def _send(self, method: str, url: str, headers: Dict[str, str], data: Any) -> httpx.Response:
        """发送单个请求，整体耗时超过 settings.timeout 即中止"""
        try:
            return await asyncio.wait_for(
                self.client.request(method, url, headers=headers, json=data),
                timeout=self.settings.timeout,
            )
        except asyncio.TimeoutError:
            raise httpx.TimeoutException(f"请求超时 ({self.settings.timeout}s): {method} {url}")

    def _check_token(self) -> Optional[Outcome]:
        """请求前检查令牌，返回失败结果或 None"""
        if not self.token_manager.get_token():
            return Outcome.fail("未设置 API 令牌，请先输入 ZED Champions 令牌")
        if self.token_manager.is_token_expired():
            return Outcome.fail("API 令牌已过期，请重新获取新的令牌")
        return None

    @staticmethod
    def _decode_error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            message = body.get('message') or body.get('error')
            if message:
                return str(message)
        return f"Error {response.status_code}: {response.reason_phrase}"

    def _error_outcome(self, response: httpx.Response) -> Outcome:
        if response.status_code == 401:
            # 令牌已确定无效
            self.token_manager.clear_token()
            return Outcome.fail("认证失败：令牌无效或已过期，请重新获取新的令牌")
        return Outcome.fail(self._decode_error_message(response))

    async def _request_json(self, endpoint: str) -> Outcome:
        """GET 请求并解码 JSON，所有错误都转成失败结果"""
        try:
            response = await self.authorized_fetch(endpoint)
        except TokenMissingError as e:
            return Outcome.fail(str(e))
        except httpx.HTTPError as e:
            print(f"网络请求失败 {endpoint}: {e!r}")
            return Outcome.fail(f"网络请求失败: {e}")
        except ValueError as e:
            # 请求无法构建，例如头部含非 ASCII 字符
            print(f"构建请求失败 {endpoint}: {e!r}")
            return Outcome.fail(f"请求构建失败: {e}")

        if not response.is_success:
            return self._error_outcome(response)

        try:
            return Outcome.ok(response.json())
        except ValueError as e:
            print(f"响应解析失败 {endpoint}: {e}")
            return Outcome.fail("响应解析失败：返回内容不是有效的 JSON")

    async def test_connection(self) -> Outcome:
        """测试连接，成功时返回账户信息"""
        failed = self._check_token()
        if failed:
            return failed

        outcome = await self._request_json(ACCOUNT_ENDPOINT)
        if not outcome.success:
            return outcome

        account = outcome.data if isinstance(outcome.data, dict) else {}
        username = account.get('username') or 'ZED Champions 用户'
        outcome.message = f"连接成功！欢迎，{username}"
        return outcome

    async def fetch_horse(self, horse_id) -> Outcome:
        """按 ID 获取单匹马"""
        horse_id = '' if horse_id is None else str(horse_id).strip()
        if not horse_id:
            return Outcome.fail("请输入马匹ID")

        failed = self._check_token()
        if failed:
            return failed

        return await self._request_json(HORSE_ENDPOINT.format(horse_id=quote(horse_id, safe='')))

    async def fetch_stable(self, kind: str = 'racing') -> Outcome:
        """
        获取马厩中的全部马匹

        Args:
            kind: racing 或 breeding

        Returns:
            成功时 data 为马匹列表（字段缺失时为空列表）
        """
        endpoint = STABLE_ENDPOINTS.get((kind or '').strip().lower())
        if endpoint is None:
            return Outcome.fail(f"无效的马匹类型: {kind}，可选 racing 或 breeding")

        failed = self._check_token()
        if failed:
            return failed

        outcome = await self._request_json(endpoint)
        if not outcome.success:
            return outcome

        body = outcome.data if isinstance(outcome.data, dict) else {}
        horses = body.get('horses')
        outcome.data = horses if isinstance(horses, list) else []
        return outcome

    async def fetch_horse_types(self) -> List[str]:
        """获取可选的马匹类型，任何失败都回退为默认值"""
        if self._check_token():
            return list(DEFAULT_HORSE_TYPES)

        outcome = await self._request_json(HORSE_TYPES_ENDPOINT)
        if not outcome.success:
            print(f"获取马匹类型失败: {outcome.message}")
            return list(DEFAULT_HORSE_TYPES)

        types = outcome.data.get('types') if isinstance(outcome.data, dict) else None
        if isinstance(types, list) and types:
            return [str(t) for t in types]
        return list(DEFAULT_HORSE_TYPES)
