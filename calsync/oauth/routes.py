"""
Google OAuth connect flow.

``/authorize`` issues a single-use state bound to the principal and returns
the consent URL; ``/callback`` validates that state and stores the
credential for the principal it was bound to.
"""
from flask import current_app, jsonify, request

from calsync.google.errors import IntegrationError
from calsync.oauth import oauth_bp
from calsync.logging_config import get_logger

logger = get_logger(__name__)


def _components():
    return current_app.extensions["calsync"]


@oauth_bp.route("/authorize", methods=["GET"])
def authorize():
    user_id = request.args.get("userId", type=int)
    if user_id is None:
        return jsonify({"error": "userId is required"}), 400

    components = _components()
    state = components["state_store"].generate_state(user_id)
    authorization_url = components["oauth_service"].build_authorization_url(state)

    logger.info("OAuth authorization started", user_id=user_id)
    return jsonify({"authorizationUrl": authorization_url, "state": state}), 200


@oauth_bp.route("/callback", methods=["GET"])
def callback():
    error = request.args.get("error")
    if error:
        logger.warning("OAuth consent denied", error=error)
        return jsonify({"error": f"Authorization denied: {error}"}), 400

    code = request.args.get("code")
    state = request.args.get("state")
    if not code or not state:
        return jsonify({"error": "code and state are required"}), 400

    components = _components()
    user_id = components["state_store"].validate_state(state)
    if user_id is None:
        return jsonify({"error": "Invalid or expired OAuth state"}), 400

    try:
        components["oauth_service"].exchange_code_for_token(code, user_id)
    except IntegrationError as e:
        logger.error("OAuth code exchange failed", user_id=user_id, error=str(e))
        return jsonify({"error": str(e)}), 502

    return jsonify({"success": True, "data": {"userId": user_id, "connected": True}}), 200
