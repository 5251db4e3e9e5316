from flask import Blueprint

billing_bp = Blueprint("billing_bp", __name__, url_prefix="/billing")

billing_webhooks_bp = Blueprint("billing_webhooks_bp", __name__, url_prefix="/billing/webhook")

# bearer-JWT JSON API; the webhook is authenticated by its Stripe signature
from extensions import csrf
csrf.exempt(billing_bp)
csrf.exempt(billing_webhooks_bp)

# Views are bound in .routes / .webhooks, imported by the app factory
from . import models
