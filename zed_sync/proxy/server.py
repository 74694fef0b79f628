#!/usr/bin/env python3
"""
本地开发代理
把 /zed/* 请求转发到 ZED Champions API，解决浏览器跨域限制
"""
import os
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional
from urllib.parse import urlsplit

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

from ..config.config_manager import Settings, load_settings

PROXY_PREFIX = '/zed'

# 逐跳头，不能原样转发
HOP_BY_HOP_HEADERS = {
    'host',
    'content-length',
    'connection',
    'keep-alive',
    'transfer-encoding',
    'upgrade',
    'proxy-authorization',
    'proxy-connection',
    'te',
    'trailer',
}


class ZedProxyService:
    """ZED API 转发代理"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        prefix: str = PROXY_PREFIX,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        初始化代理服务

        Args:
            settings: 运行配置，上游地址取 settings.api_base
            prefix: 代理路径前缀
            transport: 自定义 httpx 传输层（测试用）
        """
        self.settings = settings or Settings()
        self.prefix = '/' + prefix.strip('/')
        self.client = self._create_async_client(transport)

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            yield
            # 关闭时释放HTTP客户端资源
            await self.client.aclose()

        self.app = FastAPI(lifespan=lifespan)
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=['*'],
            allow_methods=['*'],
            allow_headers=['*'],
        )
        self._setup_routes()

    def _create_async_client(self, transport: Optional[httpx.AsyncBaseTransport]) -> httpx.AsyncClient:
        """创建并配置 httpx AsyncClient"""
        timeout = httpx.Timeout(self.settings.timeout, connect=10.0)
        return httpx.AsyncClient(timeout=timeout, transport=transport)

    def _setup_routes(self):
        """设置路由"""
        @self.app.get('/health')
        async def health():
            return {'status': 'ok', 'target': self.settings.api_base}

        @self.app.api_route(
            self.prefix + '/{path:path}',
            methods=['GET', 'POST', 'PUT', 'DELETE', 'PATCH']
        )
        async def proxy_route(path: str, request: Request):
            return await self.proxy(path, request)

    def build_target(self, path: str, request: Request) -> tuple:
        """
        构建上游请求参数

        Returns:
            (target_url, headers)
        """
        base_url = self.settings.api_base.rstrip('/')
        normalized_path = path.lstrip('/')
        target_url = f"{base_url}/{normalized_path}" if normalized_path else base_url

        raw_query = request.url.query
        if raw_query:
            target_url = f"{target_url}?{raw_query}"

        headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}
        # 浏览器附带的 Origin 会被上游拒绝
        headers.pop('origin', None)
        headers['host'] = urlsplit(target_url).netloc

        # 服务端配置的令牌优先
        server_token = os.getenv('ZED_TOKEN')
        if server_token:
            headers['authorization'] = f'Bearer {server_token}'

        return target_url, headers

    async def proxy(self, path: str, request: Request) -> Response:
        """处理代理请求"""
        start_time = time.time()
        target_url, headers = self.build_target(path, request)
        body = await request.body()

        try:
            upstream_request = self.client.build_request(
                method=request.method,
                url=target_url,
                headers=headers,
                content=body if body else None,
            )
            upstream = await self.client.send(upstream_request)
        except httpx.HTTPError as e:
            print(f"代理转发失败 {request.method} {target_url}: {e!r}")
            return PlainTextResponse('Bad gateway', status_code=502)

        duration_ms = int((time.time() - start_time) * 1000)
        print(f"{request.method} {target_url} -> {upstream.status_code} ({duration_ms}ms)")

        response_headers: Dict[str, str] = {
            k: v for k, v in upstream.headers.items()
            if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() != 'content-encoding'
        }
        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            headers=response_headers,
        )


def create_app() -> FastAPI:
    """uvicorn --factory 入口"""
    return ZedProxyService(load_settings()).app
