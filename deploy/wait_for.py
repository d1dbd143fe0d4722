#!/usr/bin/env python3
"""
通用就绪门控：等待 WAIT_FOR 中的依赖全部可连接后运行给定命令，并以该命令的退出码退出。
用法：WAIT_FOR="provisioner:8000" python deploy/wait_for.py /usr/local/bin/service --port 8001
"""
import logging
import os
import subprocess
import sys

ROOT = os.environ.get("APP_ROOT", os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

from provision_core.core.readiness import ReadinessProbe, load_endpoints
from provision_core.core.startup import StartupCoordinator


def run_command(argv):
    return subprocess.call(argv)


if __name__ == "__main__":
    argv = sys.argv[1:]
    if argv and argv[0] == "--":
        argv = argv[1:]
    if not argv:
        sys.stderr.write("usage: wait_for.py [--] command [args...]\n")
        sys.exit(2)
    sys.exit(StartupCoordinator(ReadinessProbe(load_endpoints())).run(run_command, argv))
