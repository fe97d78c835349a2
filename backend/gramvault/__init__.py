"""GramVault - paced, abuse-aware photo upload and archive service."""

__version__ = "0.1.0"
