"""
Simulation - 交易效果分析

数据模型、trace 解码、回执日志分析与展示辅助函数。
编排器位于 txsim.simulation.simulator。
"""

from .models import (
    SimulationRequest,
    SimulationResult,
    SimulationStrategy,
    TransferKind,
    TransferRecord,
    NativeTransfer,
    FungibleTransfer,
    NonFungibleTransfer,
)
from .traces import FlatTrace, CallTree, decode_flat_trace, decode_call_tree, decode_trace
from .logs import TransferLogAnalyzer, TRANSFER_EVENT_SIGNATURE
from .formatting import format_units, format_transfer_summary

__all__ = [
    # Models
    "SimulationRequest",
    "SimulationResult",
    "SimulationStrategy",
    "TransferKind",
    "TransferRecord",
    "NativeTransfer",
    "FungibleTransfer",
    "NonFungibleTransfer",
    # Traces
    "FlatTrace",
    "CallTree",
    "decode_flat_trace",
    "decode_call_tree",
    "decode_trace",
    # Logs
    "TransferLogAnalyzer",
    "TRANSFER_EVENT_SIGNATURE",
    # Formatting
    "format_units",
    "format_transfer_summary",
]
