"""Roster Control: Discord role to game-server whitelist reconciliation."""

__version__ = "0.1.0"
