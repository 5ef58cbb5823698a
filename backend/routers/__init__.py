from .deadline_rules import router as deadline_rules_router
from .deadlines import router as deadlines_router

__all__ = [
    'deadline_rules_router',
    'deadlines_router',
]
