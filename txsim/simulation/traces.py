"""
Trace 解码

两种 trace 形态各自一个纯函数解码器：
- FlatTrace: trace_transaction (Parity/Erigon) 返回的扁平调用列表
- CallTree:  debug_traceTransaction + callTracer (Geth) 返回的嵌套调用树

解码器不访问网络、不抛异常；格式不对的节点直接跳过。
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

from web3 import Web3

from .formatting import NATIVE_DECIMALS, format_units
from .models import NativeTransfer, parse_quantity

logger = logging.getLogger(__name__)


# callTracer 中不会把 value 转给目标地址的调用类型
NON_TRANSFERRING_CALL_TYPES = {"DELEGATECALL", "STATICCALL", "CALLCODE"}

# callTracer 嵌套深度上限，防止异常数据导致递归过深
MAX_CALL_DEPTH = 1024


@dataclass(frozen=True)
class FlatTrace:
    """trace_transaction 结果"""
    records: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class CallTree:
    """debug_traceTransaction (callTracer) 结果"""
    root: Optional[Dict[str, Any]] = None


RawTrace = Union[FlatTrace, CallTree]


def _native_transfer(from_address: Any, to_address: Any, value: Any) -> Optional[NativeTransfer]:
    """value > 0 时构造记录，否则返回 None；格式错误抛 ValueError / TypeError"""
    amount = parse_quantity(value) if value is not None else 0
    if amount <= 0:
        return None
    return NativeTransfer(
        from_address=Web3.to_checksum_address(from_address),
        to_address=Web3.to_checksum_address(to_address),
        amount=amount,
        formatted_amount=format_units(amount, NATIVE_DECIMALS),
    )


def decode_flat_trace(trace: FlatTrace, include_top_level: bool = True) -> List[NativeTransfer]:
    """
    从扁平 trace 列表中提取原生币转账

    Args:
        trace: trace_transaction 结果
        include_top_level: False 时排除 traceAddress 为空的顶层调用
            （顶层转账已由交易对象给出，避免重复计数）

    Returns:
        按输入顺序排列的原生币转账
    """
    transfers: List[NativeTransfer] = []
    records = trace.records if isinstance(trace.records, list) else []

    for index, record in enumerate(records):
        try:
            if not isinstance(record, dict) or record.get("type") != "call":
                continue
            action = record.get("action") or {}
            if action.get("callType", "call") != "call":
                continue
            if not include_top_level and not record.get("traceAddress"):
                continue
            transfer = _native_transfer(action.get("from"), action.get("to"), action.get("value"))
            if transfer is not None:
                transfers.append(transfer)
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug(f"跳过无法解析的 trace 记录 #{index}: {e}")

    return transfers


def _walk_calls(root: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    """深度优先（先序）遍历 callTracer 节点"""
    stack = [(root, 0)]
    while stack:
        node, depth = stack.pop()
        yield node
        children = node.get("calls")
        if depth >= MAX_CALL_DEPTH or not isinstance(children, list):
            continue
        for child in reversed(children):
            if isinstance(child, dict):
                stack.append((child, depth + 1))


def decode_call_tree(trace: CallTree, include_root: bool = True) -> List[NativeTransfer]:
    """
    从 callTracer 调用树中提取原生币转账

    value 为 0 的节点本身不产出记录，但其子调用仍会被遍历。

    Args:
        trace: debug_traceTransaction 结果
        include_root: False 时只统计 calls 之下的子树
    """
    transfers: List[NativeTransfer] = []
    root = trace.root
    if not isinstance(root, dict):
        return transfers

    for node in _walk_calls(root):
        if node is root and not include_root:
            continue
        try:
            call_type = str(node.get("type", "CALL")).upper()
            if call_type in NON_TRANSFERRING_CALL_TYPES:
                continue
            transfer = _native_transfer(node.get("from"), node.get("to"), node.get("value"))
            if transfer is not None:
                transfers.append(transfer)
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug(f"跳过无法解析的 call 节点: {e}")

    return transfers


def decode_trace(trace: Optional[RawTrace], include_top_level: bool = True) -> List[NativeTransfer]:
    """按 trace 形态分派到对应的解码器"""
    if isinstance(trace, FlatTrace):
        return decode_flat_trace(trace, include_top_level=include_top_level)
    if isinstance(trace, CallTree):
        return decode_call_tree(trace, include_root=include_top_level)
    return []
