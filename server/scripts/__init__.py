"""Maintenance scripts for the Perudo server."""
