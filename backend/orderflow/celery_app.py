from __future__ import annotations

from celery import Celery


def create_celery_app(flask_app) -> Celery:
    """Celery bound to ``flask_app``: tasks run inside its app context and read its config."""
    config = flask_app.config
    celery = Celery(
        flask_app.import_name,
        broker=config["CELERY_BROKER_URL"],
        backend=config["CELERY_RESULT_BACKEND"],
    )
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        beat_schedule={
            "otp-challenge-sweep": {
                "task": "orderflow.tasks.order_tasks.sweep_expired_otp_challenges",
                "schedule": float(config["OTP_SWEEP_INTERVAL_SECONDS"]),
                "kwargs": {"grace_seconds": int(config["OTP_SWEEP_GRACE_SECONDS"])},
            },
        },
    )

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.set_default()
    celery.autodiscover_tasks(["orderflow.tasks"], related_name="order_tasks")
    return celery
