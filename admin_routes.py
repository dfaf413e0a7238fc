"""Internal admin endpoints for rides, fleet vehicles, schedules and company operations."""

import hmac

from flask import Blueprint, current_app, jsonify, request

from errors import AuthorizationError
from validation import require_json_object

admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


@admin_bp.before_request
def require_internal_key():
    """Only callers holding the shared internal key may reach admin routes."""
    key = current_app.config.get('INTERNAL_API_KEY') or ''
    if not key:
        raise AuthorizationError('internal_key_not_configured')
    header = request.headers.get('X-Internal-Key', '')
    if not header or not hmac.compare_digest(header, key):
        raise AuthorizationError('invalid_internal_key')


def _rides():
    return current_app.extensions['ride_manager']


def _fleet():
    return current_app.extensions['fleet_manager']


def _json_body():
    return require_json_object(request.get_json(silent=True))


# Rides

@admin_bp.route('/rides', methods=['GET'])
def list_rides():
    return jsonify(_rides().list_rides(request.args))


@admin_bp.route('/rides/batch', methods=['GET'])
def batch_rides():
    return jsonify(_rides().batch(request.args.get('ids')))


@admin_bp.route('/rides/<ride_id>', methods=['GET'])
def ride_detail(ride_id):
    return jsonify(_rides().get_ride(ride_id, missing_code='ride_not_found'))


@admin_bp.route('/rides/<ride_id>', methods=['PATCH'])
def update_ride(ride_id):
    return jsonify(_rides().update_ride(ride_id, _json_body()))


@admin_bp.route('/rides/<ride_id>/close', methods=['POST'])
def close_ride(ride_id):
    return jsonify(_rides().close_ride(ride_id))


# Fleet vehicles

@admin_bp.route('/companies/<company_id>/vehicles', methods=['GET'])
def list_vehicles(company_id):
    return jsonify(_fleet().list_vehicles(company_id, request.args))


@admin_bp.route('/companies/<company_id>/vehicles', methods=['POST'])
def create_vehicle(company_id):
    return jsonify(_fleet().create_vehicle(company_id, _json_body())), 201


@admin_bp.route('/companies/<company_id>/vehicles/<vehicle_id>', methods=['PATCH'])
def update_vehicle(company_id, vehicle_id):
    return jsonify(_fleet().update_vehicle(company_id, vehicle_id, _json_body()))


@admin_bp.route('/companies/<company_id>/vehicles/<vehicle_id>', methods=['DELETE'])
def archive_vehicle(company_id, vehicle_id):
    return jsonify(_fleet().archive_vehicle(company_id, vehicle_id))


# Vehicle schedules

@admin_bp.route('/companies/<company_id>/vehicles/<vehicle_id>/schedules', methods=['GET'])
def list_schedules(company_id, vehicle_id):
    return jsonify(_fleet().list_schedules(company_id, vehicle_id, request.args))


@admin_bp.route('/companies/<company_id>/vehicles/<vehicle_id>/schedules', methods=['POST'])
def create_schedule(company_id, vehicle_id):
    return jsonify(_fleet().create_schedule(company_id, vehicle_id, _json_body())), 201


@admin_bp.route('/companies/<company_id>/vehicles/<vehicle_id>/schedules/<schedule_id>', methods=['PATCH'])
def update_schedule(company_id, vehicle_id, schedule_id):
    return jsonify(_fleet().update_schedule(company_id, vehicle_id, schedule_id, _json_body()))


@admin_bp.route('/companies/<company_id>/vehicles/<vehicle_id>/schedules/<schedule_id>', methods=['DELETE'])
def cancel_schedule(company_id, vehicle_id, schedule_id):
    return jsonify(_fleet().cancel_schedule(company_id, vehicle_id, schedule_id))


# Company operations

def _optional_json_body():
    data = request.get_json(silent=True)
    return {} if data is None else require_json_object(data)


@admin_bp.route('/companies/<company_id>/policy', methods=['GET'])
def get_policy(company_id):
    return jsonify(_fleet().get_policy(company_id))


@admin_bp.route('/companies/<company_id>/policy', methods=['PATCH'])
def update_policy(company_id):
    return jsonify(_fleet().update_policy(company_id, _json_body()))


@admin_bp.route('/companies/<company_id>/schedules/auto-assign', methods=['POST'])
def auto_assign_schedule(company_id):
    return jsonify(_fleet().auto_assign_schedule(company_id, _json_body())), 201


@admin_bp.route('/companies/<company_id>/schedules/<schedule_id>/approve', methods=['POST'])
def approve_schedule(company_id, schedule_id):
    return jsonify(_fleet().approve_schedule(company_id, schedule_id, _optional_json_body()))


@admin_bp.route('/companies/<company_id>/schedules/<schedule_id>/reject', methods=['POST'])
def reject_schedule(company_id, schedule_id):
    return jsonify(_fleet().reject_schedule(company_id, schedule_id, _optional_json_body()))


@admin_bp.route('/companies/<company_id>/dashboard', methods=['GET'])
def company_dashboard(company_id):
    return jsonify(_fleet().dashboard(company_id))
