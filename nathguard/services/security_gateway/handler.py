"""Security gateway HTTP handler.

Every user message MUST pass through /screen before reaching the AI
service. Responses never expose raw errors: a failed security check
returns an allowed decision flagged security_check_failed.
"""
import logging
import os

from flask import Flask, Response, jsonify, request

from nathguard.shared.models import SecurityContext
from nathguard.shared.utils import hash_pii, hash_text_for_audit
from .gateway import DecisionReason, SecurityGateway, create_gateway
from .health import OverallStatus
from .settings import validate_or_raise

logger = logging.getLogger(__name__)

DEFAULT_SCREEN_ENDPOINT = "chat:message"


def _context(data: dict, default_endpoint: str) -> SecurityContext:
    return SecurityContext(
        user_id=str(data.get("user_id") or ""),
        endpoint=str(data.get("endpoint") or default_endpoint),
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )


def create_app(gateway: SecurityGateway) -> Flask:
    """Build the Flask app around an already created gateway."""
    app = Flask(__name__)

    @app.route("/health", methods=["GET"])
    def health():
        """Security health report. 503 only when a check fails."""
        report = gateway.health_check()
        status_code = 503 if report.status is OverallStatus.UNHEALTHY else 200
        return jsonify({"service": "nathguard", **report.to_dict()}), status_code

    @app.route("/ready", methods=["GET"])
    def ready():
        if not gateway.is_ready():
            return jsonify({"status": "not_ready", "reason": "database_unavailable"}), 503
        return jsonify({"status": "ready"}), 200

    @app.route("/screen", methods=["POST"])
    def screen():
        """Run the inbound pipeline on one message.

        Request Body:
            {
                "user_id": "user_123",
                "message": "Message text",
                "endpoint": "chat:message" (optional),
                "conversation_id": "conv_456" (optional),
                "history": ["earlier message", ...] (optional)
            }

        Response:
            MessageDecision as JSON; 429 with rate limit headers when the
            user is over quota.
        """
        data = request.get_json(silent=True)
        if not data:
            logger.warning("SCREEN_REQUEST_INVALID", extra={"reason": "empty_body"})
            return jsonify({"error": "Request body required"}), 400

        message = data.get("message")
        if not isinstance(message, str) or not message:
            logger.warning("SCREEN_REQUEST_INVALID", extra={"reason": "missing_message"})
            return jsonify({"error": "Missing required field: message"}), 400

        history = data.get("history") or []
        if not isinstance(history, list):
            return jsonify({"error": "history must be a list"}), 400

        try:
            context = _context(data, DEFAULT_SCREEN_ENDPOINT)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        logger.info(
            "SCREEN_REQUESTED",
            extra={
                "user_hash": hash_pii(context.user_id),
                "endpoint": context.endpoint,
                "message_length": len(message),
                "message_hash": hash_text_for_audit(message),
            }
        )

        decision = gateway.process_message(
            context,
            message,
            history=history,
            conversation_id=data.get("conversation_id"),
        )

        status_code = 429 if decision.reason is DecisionReason.RATE_LIMITED else 200
        response = jsonify(decision.to_dict())
        if decision.rate_limit is not None:
            response.headers.update(
                gateway.quota.rate_limit_headers(decision.rate_limit, context.endpoint)
            )
        return response, status_code

    @app.route("/quota/check", methods=["POST"])
    def quota_check():
        data = request.get_json(silent=True) or {}
        try:
            context = _context(data, "")
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        result = gateway.check_quota(context)
        response = jsonify(result.to_dict())
        response.headers.update(gateway.quota.rate_limit_headers(result, context.endpoint))
        return response, 200 if result.allowed else 429

    @app.route("/audit/export/<user_id>", methods=["GET"])
    def audit_export(user_id: str):
        """Compliance export of one user's audit trail (json or csv)."""
        export_format = request.args.get("format", "json").lower()
        try:
            body = gateway.audit.export_for_compliance(user_id, export_format)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        gateway.audit.log_data_export(
            user_id,
            "audit_logs",
            {"format": export_format},
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
        mimetype = "text/csv" if export_format == "csv" else "application/json"
        return Response(body, status=200, mimetype=mimetype)

    return app


if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    validate_or_raise()
    security_gateway = create_gateway()
    security_gateway.start()
    try:
        port = int(os.getenv("PORT", "8000"))
        create_app(security_gateway).run(host="0.0.0.0", port=port, debug=False)
    finally:
        security_gateway.shutdown()
