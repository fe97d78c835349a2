"""Connectivity monitoring."""
