from flask import Blueprint

calls_bp = Blueprint("calls", __name__, url_prefix="/calls")
voice_webhooks_bp = Blueprint("voice_webhooks", __name__, url_prefix="/calls/webhook")

# JSON API authenticated by bearer JWT; the webhook is called by Vapi
from extensions import csrf
csrf.exempt(calls_bp)
csrf.exempt(voice_webhooks_bp)

# Views are bound in .routes / .webhooks, imported by the app factory;
# services import calls.models, so the package itself stays light.
from . import models
