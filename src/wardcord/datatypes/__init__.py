"""Typed records shared by the automod engine, repositories and scheduler."""
