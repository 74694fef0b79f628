#!/usr/bin/env python3
import argparse
import asyncio
import json
import sys
import time

from .auth.token_manager import TokenManager
from .auth.token_store import TokenStore
from .config.config_manager import Settings, load_settings
from .core.api_client import ZedApiClient
from .core.outcome import Outcome
from .proxy.ctl import ProxyController

STATUS_POLL_SECONDS = 60


def mask_token(token: str) -> str:
    """只显示首尾几位"""
    if len(token) <= 12:
        return '*' * len(token)
    return f"{token[:6]}...{token[-4:]}"


def build_token_manager(settings: Settings) -> TokenManager:
    return TokenManager(TokenStore(settings.storage_file))


def print_token_status(token_manager: TokenManager):
    """显示令牌状态"""
    token = token_manager.get_token()
    if not token:
        print("令牌状态: 未设置")
        print("\n运行 'zed-sync token set <令牌>' 保存 ZED Champions API 令牌")
        return

    expiry = token_manager.get_token_expiry()
    print(f"令牌: {mask_token(token)}")
    if expiry is None:
        print("令牌状态: 无法解析，请重新设置")
        return

    print(f"过期时间: {expiry.date.astimezone().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"剩余时间: {token_manager.format_remaining_time(expiry.remaining)}")
    if expiry.expired:
        print("令牌状态: 已过期，请重新获取新的令牌")
    else:
        print("令牌状态: 有效")


def print_outcome(outcome: Outcome) -> int:
    """输出结果并返回退出码"""
    marker = '✓' if outcome.success else '✗'
    if outcome.message:
        print(f"{marker} {outcome.message}")
    if outcome.success and outcome.data is not None:
        print(json.dumps(outcome.data, ensure_ascii=False, indent=2))
    return 0 if outcome.success else 1


async def run_api_command(args, settings: Settings, token_manager: TokenManager) -> int:
    async with ZedApiClient(token_manager, settings) as client:
        if args.command == 'test':
            outcome = await client.test_connection()
            # 测试连接时只展示消息
            outcome_to_print = Outcome(outcome.success, outcome.message)
            return print_outcome(outcome_to_print)
        if args.command == 'horse':
            return print_outcome(await client.fetch_horse(args.horse_id))
        if args.command == 'stable':
            outcome = await client.fetch_stable(args.kind)
            if outcome.success:
                outcome.message = f"{args.kind} 马厩共 {len(outcome.data)} 匹马"
            return print_outcome(outcome)
        if args.command == 'types':
            for horse_type in await client.fetch_horse_types():
                print(horse_type)
            return 0
    return 1


def handle_token_command(args, token_manager: TokenManager) -> int:
    """处理 token 命令"""
    if args.token_command == 'set':
        raw = args.token
        if raw == '-':
            raw = sys.stdin.read()
        if not raw or not raw.strip():
            print("✗ 请输入有效的令牌")
            return 1
        if token_manager.set_token(raw):
            print("✓ 令牌保存成功")
            print_token_status(token_manager)
            return 0
        print("✗ 令牌格式无效，请粘贴完整的 Authorization 头的值")
        return 1

    if args.token_command == 'show':
        print_token_status(token_manager)
        return 0

    if args.token_command == 'status':
        print_token_status(token_manager)
        if not args.watch:
            return 0 if not token_manager.is_token_expired() else 1
        try:
            while True:
                time.sleep(STATUS_POLL_SECONDS)
                print()
                print_token_status(token_manager)
        except KeyboardInterrupt:
            return 0

    if args.token_command == 'clear':
        token_manager.clear_token()
        print("✓ 令牌已清除")
        return 0

    print("未知的token命令，运行 'zed-sync token --help' 查看帮助")
    return 1


def handle_proxy_command(args, settings: Settings) -> int:
    """处理 proxy 命令"""
    controller = ProxyController(settings)
    if args.proxy_command == 'start':
        return 0 if controller.start() else 1
    if args.proxy_command == 'stop':
        return 0 if controller.stop() else 1
    if args.proxy_command == 'restart':
        return 0 if controller.restart() else 1
    if args.proxy_command == 'status':
        controller.status()
        return 0
    print("未知的proxy命令，运行 'zed-sync proxy --help' 查看帮助")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='ZED Sync - ZED Champions 马匹数据同步工具',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""使用示例:
  zed-sync token set "Bearer eyJ..."   保存API令牌
  zed-sync token status                查看令牌剩余时间
  zed-sync test                        测试API连接
  zed-sync horse 12345                 获取单匹马数据
  zed-sync stable racing               获取比赛马厩
  zed-sync proxy start                 启动本地开发代理""",
        prog='zed-sync'
    )
    subparsers = parser.add_subparsers(
        dest='command',
        title='可用命令',
        description='使用 zed-sync <命令> --help 查看具体命令的详细帮助',
        help='命令说明'
    )

    # token 命令组
    token_parser = subparsers.add_parser(
        'token',
        help='令牌管理',
        description='保存、查看和清除 ZED Champions API 令牌'
    )
    token_subparsers = token_parser.add_subparsers(
        dest='token_command',
        title='令牌命令',
        help='令牌子命令'
    )
    token_set = token_subparsers.add_parser(
        'set',
        help='保存令牌',
        description='保存令牌，可带 "Bearer " 前缀；传入 - 时从标准输入读取'
    )
    token_set.add_argument('token', help='令牌字符串或 -')
    token_subparsers.add_parser('show', help='显示当前令牌')
    token_status = token_subparsers.add_parser(
        'status',
        help='显示令牌过期状态',
        description='显示令牌剩余时间，过期时退出码为 1'
    )
    token_status.add_argument('--watch', action='store_true', help='每分钟刷新一次')
    token_subparsers.add_parser('clear', help='清除令牌')

    # API 命令
    subparsers.add_parser('test', help='测试API连接', description='使用当前令牌请求账户信息')

    horse_parser = subparsers.add_parser('horse', help='获取单匹马数据')
    horse_parser.add_argument('horse_id', help='马匹ID')

    stable_parser = subparsers.add_parser('stable', help='获取马厩全部马匹')
    stable_parser.add_argument('kind', choices=['racing', 'breeding'], help='马厩类型')

    subparsers.add_parser('types', help='列出可导入的马匹类型')

    # proxy 命令组
    proxy_parser = subparsers.add_parser(
        'proxy',
        help='本地开发代理',
        description='管理转发到 ZED Champions API 的本地代理',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""示例:
  ZED_TOKEN=eyJ... zed-sync proxy start   以服务端令牌启动代理"""
    )
    proxy_parser.add_argument(
        'proxy_command',
        choices=['start', 'stop', 'restart', 'status'],
        help='代理操作'
    )
    return parser


def main(argv=None) -> int:
    """主函数 - 处理命令行参数"""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_settings()
    token_manager = build_token_manager(settings)

    if args.command == 'token':
        return handle_token_command(args, token_manager)
    if args.command in ('test', 'horse', 'stable', 'types'):
        return asyncio.run(run_api_command(args, settings, token_manager))
    if args.command == 'proxy':
        return handle_proxy_command(args, settings)

    parser.print_help()
    return 0


if __name__ == '__main__':
    sys.exit(main())
