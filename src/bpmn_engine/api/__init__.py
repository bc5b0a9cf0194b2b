"""
API 模块
"""

from .app import app

__all__ = ["app"]
