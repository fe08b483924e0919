# backend/cmmsdb/__init__.py
"""
Import ORM models from each app so that:

- Alembic and Base.metadata.create_all() see all tables.
- String relationship targets ("WorkOrderChecklistItem", ...) resolve no
  matter which app module is imported first.

The actual model classes are kept in cmmsdb/apps/*/models.py.
"""

from .apps.accounts import models as accounts_models            # warehouses / profiles
from .apps.work import models as work_models                    # work orders + checklists
from .apps.maintenance_program import models as maintenance_program_models  # PM templates
from .apps.escalation import models as escalation_models        # rules + history
from .apps.jobs import models as jobs_models                    # durable job queue
from .apps.notifications import models as notifications_models  # in-app notifications

__all__ = [
    "accounts_models",
    "work_models",
    "maintenance_program_models",
    "escalation_models",
    "jobs_models",
    "notifications_models",
]
