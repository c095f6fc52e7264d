#!/usr/bin/env python3
"""
Celery worker script for the storefront payments service.
Run this script to start the Celery worker that delivers payment notifications.
"""

import logging
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

if __name__ == "__main__":
    from core.celery import celery_app
    import tasks.notification_tasks  # noqa: F401  registers send_notification_task

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # Start Celery worker
    celery_app.start([
        "worker",
        f"--loglevel={os.getenv('LOG_LEVEL', 'info').lower()}",
        "--concurrency=4",
        "--without-gossip",
        "--without-mingle",
        "--without-heartbeat",
    ])
