from flask import Blueprint

usage_bp = Blueprint("usage", __name__, url_prefix="/usage")
