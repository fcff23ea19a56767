"""Video viewing integrity service."""
