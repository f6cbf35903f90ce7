from flask import Blueprint, current_app, jsonify

from pubdate.extensions import limiter

bp = Blueprint("utility", __name__)


@bp.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight liveness probe."""
    return "ok", 200


@bp.route("/health")
@limiter.exempt
def health():
    """Report queue depth and browser state for this process."""
    services = current_app.extensions["pubdate"]
    details = {
        "workers": services.workers.running,
        "pending_jobs": services.broker.pending(),
        "inflight": services.queue.pending(),
        "browser": bool(services.cluster and services.cluster.running),
        "cached_results": len(services.result_cache),
    }
    return jsonify({"status": "ok", "details": details}), 200


@bp.route("/wp-admin/<path:_>")
@bp.route("/wordpress/<path:_>")
@bp.route("/xmlrpc.php")
def _wp_block(_=None):
    """Return a 410 Gone for obvious WordPress probes."""
    return ("", 410)
