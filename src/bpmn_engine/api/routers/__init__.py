"""
API 路由器
"""

from . import flowcharts, processes, flow_nodes, signals, scheduler, targets, monitoring

__all__ = ["flowcharts", "processes", "flow_nodes", "signals", "scheduler", "targets", "monitoring"]
