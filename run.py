#!/usr/bin/env python3
"""
消息中继服务统一启动入口。

使用方式:
    python run.py           # 启动中继服务（默认）
    python run.py start     # 启动中继服务
    python run.py check     # 环境检测

更多帮助:
    python run.py --help
    python run.py <command> --help
"""

import argparse
import sys


def print_banner():
    """打印启动横幅"""
    print()
    print("╔══════════════════════════════════════════════════════════════╗")
    print("║            🔁 消息中继服务 - 统一管理入口                    ║")
    print("╚══════════════════════════════════════════════════════════════╝")
    print()


def cmd_start(args):
    """启动中继服务"""
    print_banner()
    print("🚀 正在启动中继服务...")
    print()

    from botrelay.main import run
    sys.exit(run(args.config))


def cmd_check(args):
    """运行环境检测"""
    from botrelay.check import main
    sys.exit(main(args.config))


def main():
    """主入口函数"""
    parser = argparse.ArgumentParser(
        prog="run.py",
        description="消息中继服务统一管理入口",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
使用示例:
  python run.py                       启动中继服务（默认）
  python run.py check                 检测环境
  python run.py start -c my_config.py 使用指定配置文件启动
""",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="配置文件路径（默认项目根目录 config.py，或 BOTRELAY_CONFIG 环境变量）",
    )

    subparsers = parser.add_subparsers(
        title="可用命令",
        dest="command",
        metavar="<command>",
    )

    parser_start = subparsers.add_parser(
        "start",
        help="启动中继服务（默认命令）",
        description="连接在线机器人并启动 HTTP 接口",
    )
    parser_start.set_defaults(func=cmd_start)

    parser_check = subparsers.add_parser(
        "check",
        help="环境检测",
        description="检测 Python 版本、依赖安装、必要配置和存储连接",
    )
    parser_check.set_defaults(func=cmd_check)

    args = parser.parse_args()

    # 未指定命令时默认启动
    if args.command is None:
        args.func = cmd_start

    try:
        args.func(args)
    except KeyboardInterrupt:
        print("\n\n👋 已退出")
        sys.exit(0)


if __name__ == "__main__":
    main()
