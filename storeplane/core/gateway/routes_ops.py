"""
Operational routes: health (public), metrics (admin only).
"""
import psutil
from flask import Response, jsonify

from ..store.models import utcnow_iso
from ..tenant.identity import require_admin


def _memory_usage() -> dict:
    mem = psutil.Process().memory_info()
    vm = psutil.virtual_memory()
    return {
        "rssBytes": mem.rss,
        "vmsBytes": mem.vms,
        "systemTotalBytes": vm.total,
        "systemPercent": vm.percent,
    }


def register_ops_routes(app, cp, current_identity):

    @app.route("/health", methods=["GET"])
    def health():
        body = cp.health.check()
        return jsonify(body), 200 if body["status"] == "healthy" else 503

    @app.route("/health/live", methods=["GET"])
    def health_live():
        return jsonify({"status": "alive"}), 200

    @app.route("/metrics", methods=["GET"])
    def metrics_text():
        require_admin(current_identity())
        return Response(cp.metrics.render_prometheus(), status=200, mimetype="text/plain; version=0.0.4")

    @app.route("/metrics/json", methods=["GET"])
    def metrics_json():
        require_admin(current_identity())
        return jsonify({
            "uptime": cp.metrics.uptime_seconds(),
            "memoryUsage": _memory_usage(),
            "circuitBreakers": cp.breakers.all_stats(),
            "concurrency": cp.orchestrator.stats(),
            "metrics": cp.metrics.snapshot(),
            "timestamp": utcnow_iso(),
        }), 200
