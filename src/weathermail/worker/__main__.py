"""Allow running the worker with ``python -m weathermail.worker``."""

from weathermail.worker.main import run

run()
