"""
Model package initializer.

Importing this package registers every ORM mapping, so workers and scripts
that never touch the models directly still get a complete metadata.
"""

# Import side-effects: register ORM mappings.
from app.models import (  # noqa: F401
    account,
    alert,
    background_job,
    cost_history,
    recommendation,
    resource,
    scan_job,
)
