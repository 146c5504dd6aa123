"""
Notifications module.

Routes alert notifications to providers (log, webhook, email, Telegram) by
logical channel.
"""

__all__ = ["models", "formatters", "providers", "dispatcher"]
