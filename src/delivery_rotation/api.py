"""
HTTP API for the delivery rotation service

JSON endpoints over the DeliveryRotation facade, plus liveness/readiness
probes. Authentication happens upstream: the gateway passes the caller's
identity in ``X-Actor-Id`` and ``X-Actor-Role``.
"""

from pathlib import Path
from typing import Any

from flask import Flask, g, jsonify, request

from delivery_rotation import __version__
from delivery_rotation.delivery.models import TimeoutEvent
from delivery_rotation.delivery.roles import Capability, parse_role, require_capability
from delivery_rotation.kernel.errors import (
    AccessDenied,
    ConflictError,
    DeliveryRotationError,
    NotFoundError,
    ValidationError,
)
from delivery_rotation.kernel.logging import generate_correlation_id, get_logger, set_correlation_id
from delivery_rotation.service import DeliveryRotation

logger = get_logger(__name__)

app = Flask(__name__)

# Global state - set by initialize_api()
_rotation: DeliveryRotation | None = None


def initialize_api(rotation: DeliveryRotation) -> Flask:
    """
    Bind the API to a DeliveryRotation instance

    Returns:
        The Flask app (for ``app.test_client()`` or a WSGI server)
    """
    global _rotation
    _rotation = rotation
    logger.info("API initialized", db_path=str(rotation.sqlite_path))
    return app


def _service() -> DeliveryRotation:
    if _rotation is None:
        raise RuntimeError("API not initialized - call initialize_api() first")
    return _rotation


def _body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _actor() -> tuple[str, str]:
    actor_id = request.headers.get("X-Actor-Id")
    role = request.headers.get("X-Actor-Role")
    if not actor_id or not role:
        raise ValidationError("X-Actor-Id and X-Actor-Role headers are required")
    return actor_id, role


def _dump(model: Any) -> Any:
    return model.model_dump(mode="json")


# ============================================================================
# Request hooks & error mapping
# ============================================================================


@app.before_request
def bind_correlation_id() -> None:
    cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
    set_correlation_id(cid)
    g.correlation_id = cid


@app.after_request
def add_security_headers(response: Any) -> Any:
    response.headers["X-Correlation-ID"] = g.get("correlation_id", "")
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Cache-Control"] = "no-store"
    return response


@app.errorhandler(DeliveryRotationError)
def handle_domain_error(error: DeliveryRotationError) -> tuple[Any, int]:
    if isinstance(error, ValidationError):
        status = 400
    elif isinstance(error, AccessDenied):
        status = 403
    elif isinstance(error, NotFoundError):
        status = 404
    elif isinstance(error, ConflictError):
        status = 409
    else:
        logger.error("Request failed", error=str(error), path=request.path)
        status = 500

    body: dict[str, Any] = {"error": type(error).__name__, "message": str(error)}
    field = getattr(error, "field", None)
    if field:
        body["field"] = field
    return jsonify(body), status


# ============================================================================
# Delivery requests
# ============================================================================


@app.route("/requests", methods=["POST"])
def create_request() -> tuple[Any, int]:
    actor_id, role = _actor()
    data = _body()
    created = _service().create_delivery_request(
        builder_id=data.get("builder_id", actor_id),
        pickup=data.get("pickup"),
        delivery=data.get("delivery"),
        materials=data.get("materials"),
        max_attempts=data.get("max_rotation_attempts"),
        radius_km=data.get("search_radius_km"),
        supplier_id=data.get("supplier_id"),
        auto_rotation_enabled=data.get("auto_rotation_enabled", True),
        actor_id=actor_id,
        role=role,
    )
    return jsonify(_dump(created)), 201


@app.route("/requests/<request_id>", methods=["GET"])
def get_request(request_id: str) -> tuple[Any, int]:
    return jsonify(_dump(_service().get_rotation_status(request_id))), 200


@app.route("/requests/<request_id>/responses", methods=["POST"])
def submit_response(request_id: str) -> tuple[Any, int]:
    actor_id, role = _actor()
    data = _body()
    # A body provider_id other than the caller needs the ownership override
    updated = _service().submit_provider_response(
        request_id,
        provider_id=data.get("provider_id", actor_id),
        action=data.get("action"),
        message=data.get("message"),
        estimated_cost=data.get("estimated_cost"),
        estimated_duration=data.get("estimated_duration_hours"),
        command_id=request.headers.get("Idempotency-Key"),
        actor_id=actor_id,
        role=role,
    )
    return jsonify(_dump(updated)), 200


@app.route("/requests/<request_id>/timeouts", methods=["POST"])
def submit_timeout(request_id: str) -> tuple[Any, int]:
    """Scheduler hook: report a missed deadline for the contacted provider"""
    actor_id, role = _actor()
    require_capability(actor_id, parse_role(role), Capability.REPORT_TIMEOUT)
    data = _body()
    service = _service()
    timeout = TimeoutEvent(
        request_id=request_id,
        provider_id=data.get("provider_id", ""),
        detected_at=service.time_provider.now(),
    )
    return jsonify(_dump(service.submit_timeout(timeout))), 200


@app.route("/requests/<request_id>/cancel", methods=["POST"])
def cancel_request(request_id: str) -> tuple[Any, int]:
    actor_id, role = _actor()
    data = request.get_json(silent=True) or {}
    cancelled = _service().cancel_delivery_request(
        request_id, actor_id, role, reason=data.get("reason")
    )
    return jsonify(_dump(cancelled)), 200


@app.route("/requests/<request_id>/advance", methods=["POST"])
def advance_request(request_id: str) -> tuple[Any, int]:
    actor_id, role = _actor()
    return jsonify(_dump(_service().advance_rotation(request_id, actor_id, role))), 200


@app.route("/requests/<request_id>/communications", methods=["GET"])
def list_communications(request_id: str) -> tuple[Any, int]:
    records = _service().get_communications(request_id)
    return jsonify([_dump(r) for r in records]), 200


@app.route("/requests/<request_id>/driver-contact", methods=["POST"])
def driver_contact(request_id: str) -> tuple[Any, int]:
    actor_id, role = _actor()
    data = request.get_json(silent=True) or {}
    decision = _service().can_disclose_driver_contact(
        request_id, actor_id, role, data.get("justification", "")
    )
    # A refusal is a normal answer, not an error
    return jsonify(_dump(decision)), 200


@app.route("/requests/<request_id>/phase", methods=["POST"])
def update_phase(request_id: str) -> tuple[Any, int]:
    actor_id, role = _actor()
    data = _body()
    updated = _service().update_delivery_phase(request_id, data.get("phase"), actor_id, role)
    return jsonify(_dump(updated)), 200


# ============================================================================
# Providers
# ============================================================================


@app.route("/providers", methods=["POST"])
def register_provider() -> tuple[Any, int]:
    actor_id, role = _actor()
    data = _body()
    provider = _service().register_provider(
        provider_name=data.get("provider_name", ""),
        phone=data.get("phone"),
        latitude=data.get("latitude"),
        longitude=data.get("longitude"),
        rating=data.get("rating", 0.0),
        provider_type=data.get("provider_type", "individual"),
        vehicle_type=data.get("vehicle_type"),
        provider_id=data.get("provider_id"),
        actor_id=actor_id,
        role=role,
    )
    # Phone numbers are not echoed back
    return jsonify(_dump(provider) | {"phone": None}), 201


# ============================================================================
# Health
# ============================================================================


@app.route("/health/live", methods=["GET"])
def liveness() -> tuple[Any, int]:
    """Liveness probe - the process is up"""
    return jsonify({"status": "alive", "service": "delivery-rotation"}), 200


@app.route("/health/ready", methods=["GET"])
def readiness() -> tuple[Any, int]:
    """
    Readiness probe - the event store answers queries

    Returns 503 until initialize_api() has run or while the database is
    unreachable.
    """
    if _rotation is None:
        logger.error("Readiness check failed: API not initialized")
        return jsonify({"status": "not_ready", "reason": "not_initialized"}), 503

    db_path = Path(_rotation.sqlite_path)
    if not db_path.exists():
        logger.error("Readiness check failed: DB file does not exist", db_path=str(db_path))
        return (
            jsonify({"status": "not_ready", "reason": "database_file_not_found"}),
            503,
        )

    try:
        event_count = _rotation.event_store.count_events()
    except Exception as e:
        logger.error("Readiness check failed", error=str(e), exc_info=True)
        return (
            jsonify({"status": "not_ready", "reason": "database_error", "error": str(e)}),
            503,
        )
    return jsonify({"status": "ready", "database": "accessible", "event_count": event_count}), 200


@app.route("/health", methods=["GET"])
def detailed_health() -> tuple[Any, int]:
    """Detailed health with store and registry counts"""
    health_data: dict[str, Any] = {
        "status": "healthy",
        "service": "delivery-rotation",
        "version": __version__,
    }
    if _rotation is None:
        health_data["status"] = "degraded"
        health_data["database"] = {"status": "not_initialized"}
        return jsonify(health_data), 503

    try:
        health_data["database"] = {"status": "healthy", **_rotation.stats()}
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        health_data["database"] = {"status": "unhealthy", "error": str(e)}
        health_data["status"] = "degraded"

    status_code = 200 if health_data["status"] == "healthy" else 503
    return jsonify(health_data), status_code


def run_api_server(host: str = "0.0.0.0", port: int = 8080, debug: bool = False) -> None:
    logger.info("Starting API server", host=host, port=port)
    app.run(host=host, port=port, debug=debug)
