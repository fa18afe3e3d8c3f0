"""HTTP API: application factory and shared dependencies.

The application factory lives in ``resell_publisher.api.app``; it is not
re-exported here because the feature routers import this package.
"""

from resell_publisher.api.dependencies import get_current_user_id, to_http_exception

__all__ = [
    "get_current_user_id",
    "to_http_exception",
]
