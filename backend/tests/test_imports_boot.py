from __future__ import annotations

import importlib
import os
import unittest
from unittest.mock import patch


class ImportsBootTestCase(unittest.TestCase):
    def test_import_create_app(self):
        module = importlib.import_module("orderflow")
        create_app = getattr(module, "create_app", None)
        self.assertTrue(callable(create_app))

    def test_import_main_app(self):
        module = importlib.import_module("main")
        app = getattr(module, "app", None)
        self.assertIsNotNone(app)

    def test_import_orders_segment(self):
        module = importlib.import_module("orderflow.segments.segment_orders_api")
        self.assertIsNotNone(getattr(module, "orders_bp", None))

    def test_import_order_tasks(self):
        module = importlib.import_module("orderflow.tasks.order_tasks")
        self.assertTrue(hasattr(module, "deliver_notification"))
        self.assertTrue(hasattr(module, "sweep_expired_otp_challenges"))

    def test_celery_app_reads_flask_config(self):
        from orderflow import create_app
        from orderflow.celery_app import create_celery_app

        env = {
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "CELERY_BROKER_URL": "redis://broker.internal:6379/3",
            "OTP_SWEEP_INTERVAL_SECONDS": "120",
            "OTP_SWEEP_GRACE_SECONDS": "60",
        }
        with patch.dict(os.environ, env, clear=False):
            os.environ.pop("CELERY_RESULT_BACKEND", None)
            app = create_app()
        celery = create_celery_app(app)
        self.assertEqual(celery.conf.broker_url, "redis://broker.internal:6379/3")
        self.assertEqual(app.config["CELERY_RESULT_BACKEND"], "redis://broker.internal:6379/3")
        sweep = celery.conf.beat_schedule["otp-challenge-sweep"]
        self.assertEqual(sweep["task"], "orderflow.tasks.order_tasks.sweep_expired_otp_challenges")
        self.assertEqual(sweep["schedule"], 120.0)
        self.assertEqual(sweep["kwargs"], {"grace_seconds": 60})


if __name__ == "__main__":
    unittest.main()
