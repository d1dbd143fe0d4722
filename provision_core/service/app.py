"""
开通服务 HTTP API：账户、项目与资源租约的标准化接口。
- 身份：Authorization: Bearer <API key>，经租户注册表校验；未知 key 返回 404。
- 统一错误响应：{ code, message, details, requestId }。
- 可选 X-Timeout（秒）限定本次开通/释放的等待时长；超时返回 503 TIMEOUT，租约保持进行中状态。
"""
import json
import logging
import os
import secrets
import string
import time
import uuid
from typing import Optional

from flask import Flask, Response, jsonify, request

from ..core.errors import ProvisionError
from .facade import ProvisioningService, build_service_from_env

logger = logging.getLogger("provisioning.api")

_KEY_ALPHABET = string.ascii_letters + string.digits
_KEY_LENGTH = 16


def generate_api_key() -> str:
    """16 位字母数字 API key。"""
    return "".join(secrets.choice(_KEY_ALPHABET) for _ in range(_KEY_LENGTH))


def _json_log(level: str, msg: str, trace_id: str, **kwargs):
    log_obj = {"level": level, "message": msg, "trace_id": trace_id, **kwargs}
    logger.info(json.dumps(log_obj, ensure_ascii=False))


def _error_response(code: str, message: str, details: str, request_id: str, status: int = 400):
    body = {"code": code, "message": message, "details": details, "requestId": request_id}
    return Response(
        json.dumps(body, ensure_ascii=False),
        status=status,
        mimetype="application/json; charset=utf-8",
    )


def _request_id() -> str:
    return request.headers.get("X-Request-ID", "")


class Unauthorized(ProvisionError):
    code = "UNAUTHORIZED"
    http_status = 401


class Forbidden(ProvisionError):
    code = "FORBIDDEN"
    http_status = 403


def _api_key() -> str:
    auth = request.headers.get("Authorization") or ""
    token = auth[7:].strip() if auth.startswith("Bearer ") else ""
    if not token:
        raise Unauthorized("缺少或无效 Authorization")
    return token


def _timeout() -> Optional[float]:
    raw = (request.headers.get("X-Timeout") or "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ValueError("X-Timeout 须为秒数") from None
    if value <= 0:
        raise ValueError("X-Timeout 须大于 0")
    return value


def _body() -> dict:
    if not request.is_json:
        raise ValueError("Content-Type: application/json")
    return request.get_json(silent=True) or {}


def create_app(service: Optional[ProvisioningService] = None, admin_key: Optional[str] = None):
    """
    创建开通服务 Flask 应用。
    - service：注入 ProvisioningService 便于测试；为 None 时按环境变量组装。
    - admin_key：管理端接口所需 key；为 None 时读 PROVISION_ADMIN_KEY，均为空则管理端禁用。
    """
    app = Flask(__name__)
    app.config["JSON_AS_ASCII"] = False
    svc = service if service is not None else build_service_from_env()
    admin = admin_key if admin_key is not None else (os.environ.get("PROVISION_ADMIN_KEY") or "").strip()
    app.extensions["provisioning_service"] = svc

    @app.before_request
    def before():
        request.trace_id = request.headers.get("X-Trace-Id") or uuid.uuid4().hex
        request.start_time = time.perf_counter()

    @app.after_request
    def after(resp):
        if getattr(request, "start_time", None) is not None:
            duration_ms = int((time.perf_counter() - request.start_time) * 1000)
            resp.headers["X-Response-Time"] = str(duration_ms)
            resp.headers["X-Trace-Id"] = getattr(request, "trace_id", "")
            if os.environ.get("APM_LOG") == "1":
                _json_log("info", "request", request.trace_id, method=request.method, path=request.path, status=resp.status_code, duration_ms=duration_ms)
        return resp

    @app.errorhandler(ProvisionError)
    def handle_provision_error(e: ProvisionError):
        if e.http_status >= 500:
            logger.warning("%s %s -> %s %s", request.method, request.path, e.code, e.details or e.message)
        return _error_response(e.code, e.message, e.details, _request_id(), e.http_status)

    @app.errorhandler(ValueError)
    def handle_value_error(e: ValueError):
        return _error_response("BAD_REQUEST", str(e), "", _request_id(), 400)

    # ---------- 健康 ----------
    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "up", "service": "provisioner", "store_types": svc.provisioner.store_types}), 200

    # ---------- 账户 ----------
    @app.route("/api/accounts", methods=["POST"])
    def create_account():
        """body: { "name": "tester", "key": 可选，缺省自动生成 }；仅创建时返回完整 key。"""
        body = _body()
        key = (body.get("key") or "").strip() or generate_api_key()
        account = svc.create_account(key, body.get("name") or "")
        return jsonify({"key": account.key, **account.to_dict()}), 201

    @app.route("/api/account", methods=["GET"])
    def get_account():
        return jsonify(svc.account(_api_key()).to_dict()), 200

    @app.route("/api/account", methods=["DELETE"])
    def delete_account():
        released = svc.delete_account(_api_key(), timeout=_timeout())
        return jsonify({"ok": True, "released": released}), 200

    # ---------- 项目 ----------
    @app.route("/api/projects", methods=["POST"])
    def add_project():
        key = _api_key()
        body = _body()
        ref = svc.add_project(key, body.get("name") or "")
        return jsonify(ref.to_dict()), 201

    @app.route("/api/projects/<name>", methods=["DELETE"])
    def remove_project(name):
        released = svc.remove_project(_api_key(), name, timeout=_timeout())
        return jsonify({"ok": True, "project": name, "released": [lease.id for lease in released]}), 200

    # ---------- 资源租约 ----------
    @app.route("/api/projects/<name>/resources", methods=["GET"])
    def list_resources(name):
        show = request.args.get("show_password") == "1"
        data = [lease.to_dict(show_password=show) for lease in svc.leases(_api_key(), name)]
        return jsonify({"data": data, "total": len(data)}), 200

    @app.route("/api/projects/<name>/resources/<store_type>", methods=["GET"])
    def get_resource(name, store_type):
        show = request.args.get("show_password") == "1"
        return jsonify(svc.lease(_api_key(), name, store_type).to_dict(show_password=show)), 200

    @app.route("/api/projects/<name>/resources/<store_type>", methods=["POST"])
    def provision(name, store_type):
        """开通（幂等）：已 ready 直接返回同一租约。"""
        lease = svc.provision(_api_key(), name, store_type, timeout=_timeout())
        return jsonify(lease.to_dict(show_password=True)), 200

    @app.route("/api/projects/<name>/resources/<store_type>/retry", methods=["POST"])
    def retry(name, store_type):
        lease = svc.retry(_api_key(), name, store_type, timeout=_timeout())
        return jsonify(lease.to_dict(show_password=True)), 200

    @app.route("/api/projects/<name>/resources/<store_type>", methods=["DELETE"])
    def deprovision(name, store_type):
        lease = svc.deprovision(_api_key(), name, store_type, timeout=_timeout())
        return jsonify(lease.to_dict()), 200

    # ---------- 管理端 ----------
    @app.route("/api/admin/projects", methods=["GET"])
    def admin_projects():
        key = _api_key()
        if not admin or not secrets.compare_digest(key, admin):
            raise Forbidden("仅管理员可访问")
        data = [{"project_name": p["project_name"], "account_name": p["account_name"]} for p in svc.list_projects()]
        return jsonify({"data": data, "total": len(data)}), 200

    return app
