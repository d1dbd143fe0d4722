"""
资源开通与启动就绪协调核心：就绪门控、租户注册表、按项目的后端存储资源租约。
"""
__version__ = "0.1.0"
