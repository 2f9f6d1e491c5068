"""
API Module - HTTP Speed Test Server
"""

from .rest import create_app, run_api_server

__all__ = ['create_app', 'run_api_server']
