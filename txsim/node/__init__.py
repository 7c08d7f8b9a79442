"""
Node Layer - 节点 RPC、快照与本地 Anvil 进程
"""

from .gateway import NodeGateway, RPCResponseError, to_hex, to_int
from .snapshots import SnapshotManager
from .anvil import AnvilProcess, AnvilProcessInfo, find_free_port

__all__ = [
    "NodeGateway",
    "RPCResponseError",
    "SnapshotManager",
    "AnvilProcess",
    "AnvilProcessInfo",
    "find_free_port",
    "to_hex",
    "to_int",
]
