#!/usr/bin/env python3
"""
启动开通服务：先等待 WAIT_FOR 中的依赖（如共享 Postgres、MongoDB）可连接，再启动 HTTP API。
就绪超时（READINESS_MAX_WAIT_SEC）时以非零状态退出。
"""
import logging
import os
import sys

ROOT = os.environ.get("APP_ROOT", os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

from provision_core.core.readiness import ReadinessProbe, load_endpoints
from provision_core.core.startup import StartupCoordinator
from provision_core.service import create_app


def main():
    app = create_app()
    host = os.environ.get("PROVISION_HOST", "0.0.0.0")
    port = int(os.environ.get("PROVISION_PORT", "8000"))
    app.run(host=host, port=port, threaded=True)


if __name__ == "__main__":
    StartupCoordinator(ReadinessProbe(load_endpoints())).run(main)
