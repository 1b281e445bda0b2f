"""Workspace and history services used by the engine and the server."""
