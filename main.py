"""
入口转发

本项目为可复用的包与 CLI：
  - 包名: ble_trilateration_server
  - CLI: ble-trilateration-server

此文件仅用于兼容 `python main.py` 的运行方式，会转发到 `ble_trilateration_server.cli:main`。
"""

import sys

from ble_trilateration_server.cli import main as _cli_main


def main():
    # 日志在 CLI 内按 --log-level 初始化
    return _cli_main()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
