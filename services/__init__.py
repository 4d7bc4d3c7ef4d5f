"""Collaborator services of the boundary runner."""
