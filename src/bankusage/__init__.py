"""
bankusage — track your monthly bank usage.

Sign in once with your Google account; the session is kept in the OS
credential vault and restored silently on the next start.
"""

__version__ = "0.1.0"
__all__ = ["BankUsage"]

from bankusage.app import BankUsage  # noqa: E402
