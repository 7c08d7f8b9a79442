"""
txsim - 基于节点快照的 EVM 交易模拟器

在不改变节点最终状态的前提下，预测一笔未发送交易的原生币转账、
Token 转账与 Gas 消耗。
"""

from .errors import ErrorKind, SimulationError
from .node.gateway import NodeGateway
from .simulation.models import SimulationRequest, SimulationResult, SimulationStrategy
from .simulation.simulator import CancelToken, TransactionSimulator

__version__ = "0.1.0"

__all__ = [
    "ErrorKind",
    "SimulationError",
    "NodeGateway",
    "SimulationRequest",
    "SimulationResult",
    "SimulationStrategy",
    "CancelToken",
    "TransactionSimulator",
]
