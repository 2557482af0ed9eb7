"""Celery tasks for Cordline.

Tasks are explicitly imported here to register them with Celery.
No autodiscovery - all tasks must be imported in this module.
"""

from cordline.tasks.reap_expired_messages import reap_expired_messages

__all__ = ["reap_expired_messages"]
