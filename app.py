"""HTTP entrypoint for the ride service."""

from flask import Blueprint, Flask, Response, current_app, g, jsonify, request
from flask_cors import CORS
import atexit
import logging
import time
from typing import Optional

from admin_routes import admin_bp
from config import Settings
from database_manager import DatabaseManager
from errors import RideServiceError
from fleet import FleetManager
from identity_client import IdentityClient
from metrics import RideMetrics
from rides import RideManager
from validation import require_json_object

logger = logging.getLogger(__name__)

rides_bp = Blueprint('rides', __name__)


def ride_manager() -> RideManager:
    return current_app.extensions['ride_manager']


def error_response(error: RideServiceError):
    """Render a domain error as ``{"error": code}`` with its HTTP status."""
    payload = {"error": error.code}
    if error.detail:
        payload["detail"] = error.detail
    return jsonify(payload), error.status


# API Endpoints

@rides_bp.route('/rides', methods=['POST'])
def create_ride():
    """Publish a new ride offer."""
    data = require_json_object(request.get_json(silent=True))
    ride = ride_manager().create_ride(data, request.headers.get('Authorization'))
    return jsonify(ride), 201


@rides_bp.route('/rides/<ride_id>', methods=['GET'])
def get_ride(ride_id):
    return jsonify(ride_manager().get_ride(ride_id))


@rides_bp.route('/rides/<ride_id>/lock', methods=['POST'])
def lock_seats(ride_id):
    """Reserve seats against a ride's remaining availability (used by booking)."""
    body = request.get_json(silent=True)
    seats = body.get('seats') if isinstance(body, dict) else None

    remaining = ride_manager().lock_seats(ride_id, seats)
    return jsonify({"ok": True, "seatsAvailable": remaining}), 200


@rides_bp.route('/health', methods=['GET'])
def health_check():
    """Expose the database connectivity and ride count."""
    status = current_app.extensions['db'].health_check()
    code = 200 if status["status"] == "healthy" else 503
    return jsonify({"ok": code == 200, **status}), code


@rides_bp.route('/metrics', methods=['GET'])
def metrics_endpoint():
    metrics = current_app.extensions['ride_metrics']
    return Response(metrics.render(), content_type=metrics.content_type)


def _start_request_timer():
    g.request_started_at = time.perf_counter()


def _observe_request(response):
    started = g.pop('request_started_at', None)
    if started is not None:
        rule = request.url_rule.rule if request.url_rule is not None else 'unmatched'
        current_app.extensions['ride_metrics'].observe_http_request(
            method=request.method,
            path=rule,
            status=response.status_code,
            duration=time.perf_counter() - started,
        )
    return response


def create_app(
    settings: Optional[Settings] = None,
    *,
    metrics: Optional[RideMetrics] = None,
    identity: Optional[IdentityClient] = None,
) -> Flask:
    """Wire the database, metrics sink and managers into a Flask application."""
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    app = Flask(__name__)
    app.config['INTERNAL_API_KEY'] = settings.internal_api_key
    CORS(
        app,
        origins=settings.cors_origins,
        methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
        allow_headers=['Content-Type', 'Authorization'],
    )

    # One database layer per app so all request handlers reuse the same pool
    db = DatabaseManager(settings.database_url)
    metrics = metrics or RideMetrics()
    identity = identity or IdentityClient(settings.identity_url, timeout=settings.identity_timeout_seconds)
    rides = RideManager(db, metrics, identity, lock_strategy=settings.lock_strategy)
    fleet = FleetManager(db, metrics, refresh_delay=settings.fleet_metrics_refresh_seconds)

    app.extensions.update(
        db=db,
        ride_metrics=metrics,
        ride_manager=rides,
        fleet_manager=fleet,
    )

    app.before_request(_start_request_timer)
    app.after_request(_observe_request)
    app.register_error_handler(RideServiceError, error_response)
    app.register_blueprint(rides_bp)
    app.register_blueprint(admin_bp)

    rides.refresh_aggregates()
    fleet.refresh_fleet_aggregates()

    if settings.lock_strategy == 'read_check_write':
        logger.warning("Seat locks use read_check_write: concurrent locks can over-grant seats")
    return app


if __name__ == '__main__':
    settings = Settings.from_env()
    app = create_app(settings)
    atexit.register(app.extensions['fleet_manager'].shutdown)

    logger.info(f"""
    ================================
    RIDE SERVICE
    ================================
    Database: {app.extensions['db'].dialect}
    Seat locks: {settings.lock_strategy}
    ================================
    """)

    app.run(host="0.0.0.0", port=settings.port, debug=False, threaded=True)
