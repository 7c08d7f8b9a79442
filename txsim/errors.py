"""
txsim 异常体系

流水线阶段的错误（快照、执行、回执等待）会中止模拟；
单条日志 / trace 节点的解码错误只在各自的循环内被跳过。
"""

from enum import Enum


class ErrorKind(str, Enum):
    """调用方可据此分支的错误类别"""
    NODE_UNAVAILABLE = "node_unavailable"
    GAS_ESTIMATION_FAILED = "gas_estimation_failed"
    EXECUTION_REJECTED = "execution_rejected"
    RECEIPT_TIMEOUT = "receipt_timeout"
    TRACING_UNSUPPORTED = "tracing_unsupported"
    DECODE_ERROR = "decode_error"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


class SimulationError(Exception):
    kind: ErrorKind = ErrorKind.UNEXPECTED


class NodeUnavailable(SimulationError):
    kind = ErrorKind.NODE_UNAVAILABLE


class UnsupportedMethod(NodeUnavailable):
    """节点拒绝了某个 RPC 方法（method not found 等）"""

    def __init__(self, method: str, message: str = ""):
        self.method = method
        super().__init__(f"节点不支持 {method}: {message}" if message else f"节点不支持 {method}")


class GasEstimationFailed(SimulationError):
    kind = ErrorKind.GAS_ESTIMATION_FAILED


class ExecutionRejected(SimulationError):
    kind = ErrorKind.EXECUTION_REJECTED


class ReceiptTimeout(SimulationError):
    kind = ErrorKind.RECEIPT_TIMEOUT


class TracingUnsupported(SimulationError):
    kind = ErrorKind.TRACING_UNSUPPORTED


class DecodeError(SimulationError):
    kind = ErrorKind.DECODE_ERROR


class SimulationCancelled(SimulationError):
    kind = ErrorKind.CANCELLED
