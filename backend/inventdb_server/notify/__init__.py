"""
Change notification for InventDB.

Committed mutations are fanned out to observers through ChangeNotifier.
"""

from .notifier import ChangeEvent, ChangeNotifier, Subscription

__all__ = ["ChangeEvent", "ChangeNotifier", "Subscription"]
