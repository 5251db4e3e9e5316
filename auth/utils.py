from flask import jsonify


def init_jwt_manager(app, jwt):
    """
    Register JSON error callbacks on the JWTManager instance.
    Call this in your factory after you init JWTManager:
        init_jwt_manager(app, jwt)
    """
    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({"ok": False, "error": {"code": "unauthorized", "message": "Token has expired"}}), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(err):
        return jsonify({"ok": False, "error": {"code": "unauthorized", "message": "Invalid token"}}), 401

    @jwt.unauthorized_loader
    def missing_token_callback(err):
        return jsonify({"ok": False, "error": {"code": "unauthorized", "message": "Unauthorized"}}), 401
