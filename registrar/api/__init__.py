"""
API module for the REST surface.
"""

from .rest_api import RegistrarRestAPI

__all__ = [
    "RegistrarRestAPI",
]
