# 启动协调：就绪门控 + 单次交接主入口
from .coordinator import EXIT_READINESS_TIMEOUT, StartupCoordinator, run_with_endpoints

__all__ = ["EXIT_READINESS_TIMEOUT", "StartupCoordinator", "run_with_endpoints"]
