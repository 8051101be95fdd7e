from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from storefront.extensions import limiter
from storefront.services.quota_resolver import QuotaResolver
from storefront.services.store_service import StoreService

bp = Blueprint("stores", __name__, url_prefix="/api/stores")


@bp.route("/quota", methods=["GET"])
@jwt_required()
def get_quota():
    """Store capacity of the authenticated account"""
    quota = QuotaResolver().resolve(get_jwt_identity())
    return jsonify({"quota": quota.to_dict()}), 200


@bp.route("/overview", methods=["GET"])
@jwt_required()
def get_overview():
    """Stores with subscription, automation and deletability, plus the quota"""
    return jsonify(StoreService().overview(get_jwt_identity())), 200


@bp.route("", methods=["POST"])
@jwt_required()
@limiter.limit(lambda: current_app.config.get("STORE_CREATE_RATE_LIMIT", "20 per minute"))
def create_store():
    payload = request.get_json(silent=True) or {}
    store = StoreService().create_store(get_jwt_identity(), payload)
    return jsonify({"id": store.id, "storeName": store.store_name}), 201


@bp.route("/<store_id>", methods=["DELETE"])
@jwt_required()
def delete_store(store_id):
    StoreService().delete_store(get_jwt_identity(), store_id)
    return jsonify({"success": True}), 200
