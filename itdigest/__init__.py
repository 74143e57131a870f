"""Release watching, feed collection, MarkdownV2 helpers and Telegram posting with SQLite state."""

__version__ = "0.1.0"