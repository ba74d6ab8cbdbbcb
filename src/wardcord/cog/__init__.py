"""Py-cord cogs that connect Discord events and timers to Wardcord."""
