from celery import Celery
import os, importlib
from celery.schedules import crontab
from flask import has_app_context

# You can override where the factory lives if you ever move it (e.g., wsgi:create_app)
FLASK_FACTORY = os.getenv("FLASK_FACTORY", "app:create_app")

def _load_flask_app():
    module_name, _, factory_name = FLASK_FACTORY.partition(":")
    if not factory_name:
        factory_name = "create_app"

    module = importlib.import_module(module_name)
    factory = getattr(module, factory_name, None)
    if factory is not None:
        return factory()
    if hasattr(module, "app"):
        return getattr(module, "app")

    raise RuntimeError(f"Could not find factory '{factory_name}' or 'app' in module '{module_name}'.")


celery = Celery(
    __name__,
    include=[
        "usage.tasks",
    ],
)
celery_app = celery
from kombu import Queue
celery.conf.update(
    broker_url=os.getenv('CELERY_BROKER_URL', 'redis://127.0.0.1:6379/0'),
    result_backend=os.getenv('CELERY_RESULT_BACKEND', 'redis://127.0.0.1:6379/1'),
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone=os.getenv('CELERY_TIMEZONE', 'UTC'),
    enable_utc=True,
    task_ignore_result=False,
    worker_max_tasks_per_child=100,
    broker_connection_retry_on_startup=True,
)
celery.conf.beat_schedule = {
    "usage-settle-sweep-every-15m": {
        "task": "usage.settle_all_over_threshold",
        "schedule": crontab(minute="*/15"),
    },
}

celery.conf.task_default_queue = "billing_default"
celery.conf.task_queues = (Queue("billing_default", routing_key="billing_default"),)
celery.conf.task_default_exchange = "billing_default"
celery.conf.task_default_routing_key = "billing_default"
celery.conf.task_routes = {"usage.*": {"queue": "billing_default"}}

# Ensure every Celery task runs inside Flask app context
class AppContextTask(celery.Task):
    _flask_app = None

    def __call__(self, *args, **kwargs):
        # eager/inline calls from a request already have a context
        if has_app_context():
            return self.run(*args, **kwargs)

        if self._flask_app is None:
            self._flask_app = _load_flask_app()

        with self._flask_app.app_context():
            return self.run(*args, **kwargs)


celery.Task = AppContextTask
