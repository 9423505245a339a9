"""Convenience entry point for running a Celery worker with beat embedded.

Most deployments will invoke the standard Celery CLI (`celery -A
infrastructure.tasks worker -B`); this script is handy for local runs.
"""
from __future__ import annotations

from .config.celery import celery_app


def main() -> None:
    celery_app.worker_main(["worker", "--beat", "--loglevel=INFO", "--hostname=payments@%h"])


if __name__ == "__main__":
    main()
