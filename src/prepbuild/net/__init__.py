"""
Dev server 端口选择。
"""
from .ports import is_port_free, port_range, select_port

__all__ = ["is_port_free", "port_range", "select_port"]
