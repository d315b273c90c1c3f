"""
Routers Package - 路由模块

包含:
- api: 验证 / 调度 / 探针 / 日志 / 事件流 接口
"""

from .api import router as api_router

__all__ = ["api_router"]
