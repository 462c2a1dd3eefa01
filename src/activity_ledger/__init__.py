"""Activity Ledger: exactly-once recording of user activity events.

Submodules are imported explicitly by callers; importing the package itself has no side
effects so that tests can configure the database before ``infrastructure.db`` builds its
engine.
"""

__version__ = "0.1.0"

__all__ = ["config", "models", "tasks", "__version__"]
