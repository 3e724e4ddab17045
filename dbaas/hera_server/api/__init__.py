"""
API module for HERA Server.

This module provides:
- RpcDispatcher: transport-agnostic envelope handling
- create_app: FastAPI application exposing the dispatcher over HTTP
"""

from .dispatcher import RpcDispatcher, RpcResult
from .http_server import create_app
from .models import RpcRequest

__all__ = [
    "RpcDispatcher",
    "RpcResult",
    "RpcRequest",
    "create_app",
]
