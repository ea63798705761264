"""
quotawatch - background usage monitor for Claude accounts.

Polls each configured account on an adaptive schedule, tracks session
health, sends deduplicated OS notifications, keeps a usage history and
exposes everything through a local REST API and CLI:
  quotawatch serve     run the scheduler + local API
  quotawatch status    show current usage from a running instance
"""

__version__ = "0.3.0"

__all__ = [
    "__version__",
]
