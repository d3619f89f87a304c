"""Position notifications."""

from signal_trader.notify.telegram import NotificationError, Notifier, TelegramNotifier

__all__ = ["NotificationError", "Notifier", "TelegramNotifier"]
