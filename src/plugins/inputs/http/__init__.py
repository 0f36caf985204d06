"""
HTTP Input Plugin.

This plugin provides a REST API for managed resources.
"""

from plugins.inputs.http.api import HTTPInputPlugin

__all__ = ["HTTPInputPlugin"]
