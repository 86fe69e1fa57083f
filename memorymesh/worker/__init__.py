"""
Worker module.
Contains the job worker and the handler registry.
"""

from memorymesh.worker.handlers import execute_job, get_handler, list_handlers, register_handler
from memorymesh.worker.main import Worker, run

__all__ = ["Worker", "run", "register_handler", "get_handler", "list_handlers", "execute_job"]
