"""Host-local endpoints: systemd units, crontab logs, noVNC, processes, public IP."""

from typing import Any

from flask import Blueprint

from apps.flask_api import runtime
from apps.flask_api.utils import _ok, _params, _require_text
from services.crontab import read_crontab_log
from services.public_ip import get_public_ip

host_bp = Blueprint("host", __name__)


@host_bp.route("/aws/systemd_action", methods=["POST"])
def aws_systemd_action() -> Any:
    """Start, stop or restart one configured service."""
    payload = _params()
    action = _require_text(payload, "action")
    service = _require_text(payload, "service")
    svc = runtime.get_services()
    output = runtime.run(svc.systemd.service_action(action, service))
    return _ok({"service": service, "action": action, "output": output})


@host_bp.route("/aws/systemd_restart_all", methods=["POST"])
def aws_systemd_restart_all() -> Any:
    svc = runtime.get_services()
    return _ok({"restarted": runtime.run(svc.systemd.restart_all())})


@host_bp.route("/aws/systemd_logs/<service>", methods=["GET"])
def aws_systemd_logs(service: str) -> Any:
    svc = runtime.get_services()
    return _ok({"service": service, "entries": runtime.run(svc.systemd.get_service_logs(service))})


@host_bp.route("/aws/systemd_status/<service>", methods=["GET"])
def aws_systemd_status(service: str) -> Any:
    svc = runtime.get_services()
    return _ok({"service": service, "status": runtime.run(svc.systemd.get_service_status(service))})


@host_bp.route("/aws/crontab_logs/<crontab_type>", methods=["GET"])
def aws_crontab_logs(crontab_type: str) -> Any:
    svc = runtime.get_services()
    text = runtime.run(read_crontab_log(svc.console, crontab_type))
    return _ok({"crontab_type": crontab_type, "log": text})


@host_bp.route("/aws/novnc/start", methods=["POST"])
def aws_novnc_start() -> Any:
    svc = runtime.get_services()
    return _ok({"children": runtime.run(svc.novnc.start())})


@host_bp.route("/aws/novnc/stop", methods=["POST"])
def aws_novnc_stop() -> Any:
    svc = runtime.get_services()
    return _ok({"stopped": runtime.run(svc.novnc.stop())})


@host_bp.route("/aws/novnc/status", methods=["GET"])
def aws_novnc_status() -> Any:
    svc = runtime.get_services()
    return _ok({"enabled": svc.novnc.enabled, "children": runtime.run(svc.novnc.status())})


@host_bp.route("/aws/process_info", methods=["GET"])
def aws_process_info() -> Any:
    """CPU, memory and disk IO of the configured services' processes."""
    svc = runtime.get_services()
    name = (_params().get("name") or "").strip()
    if name:
        items = svc.processes.get_process_info_by_name(name)
    else:
        items = svc.processes.get_process_info()
    return _ok({"items": items})


@host_bp.route("/aws/public_ip", methods=["GET"])
def aws_public_ip() -> Any:
    svc = runtime.get_services()
    return _ok({"public_ip": runtime.run(get_public_ip(svc.console.public_ip_url))})
