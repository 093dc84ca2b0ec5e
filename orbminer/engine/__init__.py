"""Automation loop."""
