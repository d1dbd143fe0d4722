# 开通服务：门面 + HTTP API
from .app import create_app, generate_api_key
from .facade import ProvisioningService, build_service_from_env

__all__ = ["create_app", "generate_api_key", "ProvisioningService", "build_service_from_env"]
