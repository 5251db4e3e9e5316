from flask import Blueprint, jsonify, current_app
from werkzeug.exceptions import HTTPException
from common.errors import ApiError

api_common_bp = Blueprint("api_common", __name__)


@api_common_bp.app_errorhandler(ApiError)
def handle_api_error(err: ApiError):
    return jsonify(err.to_dict()), err.status_code


@api_common_bp.app_errorhandler(Exception)
def handle_uncaught_error(err: Exception):
    if isinstance(err, HTTPException):
        wrapped = ApiError.from_http(err)
        # keep Allow / Retry-After; the body is ours
        headers = [(k, v) for k, v in err.get_headers() if k.lower() != "content-type"]
        return jsonify(wrapped.to_dict()), wrapped.status_code, headers
    current_app.logger.exception("[api] unhandled %s", type(err).__name__)
    return jsonify(ApiError("Something went wrong", status_code=500, code="server_error").to_dict()), 500
