"""
Model package initializer.

This module exists to make sure SQLAlchemy's registry is populated in any runtime
that uses the ORM outside of `strata/main.py` (schedulers, workers, tests).
"""

# Import side-effects: register ORM mappings.
from strata.models import (  # noqa: F401
    compute,
    dns,
    inventory,
)
