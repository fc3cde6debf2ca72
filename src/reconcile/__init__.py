"""
reconcile — a cooperative workflow engine for cluster reconcilers.

Quick start::

    from reconcile import Scheduler, ResourceGate, chain, call_async, NEXT

    scheduler = Scheduler(max_workers=4)
    gate = ResourceGate(scheduler)
    gate.admit_or_queue("ns1/domain1", chain(read_domain, make_pods), {"ns": "ns1"})
"""

__version__ = "0.1.0"

from reconcile.engine import *  # noqa: F401,F403
from reconcile.engine import __all__ as _engine_all

__all__ = ["__version__", *_engine_all]
