"""
NodeGateway - 节点 JSON-RPC 网关

所有与节点的交互都经过这里：
1. 十六进制数值与整数在此处互相转换
2. 传输层错误与 RPC 错误映射为 txsim 的异常体系
3. 同一连接上的模拟通过 exclusive() 串行执行（节点快照是全局栈）
"""

import logging
import random
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import requests
from web3 import Web3
from web3.exceptions import Web3Exception
from web3.types import RPCEndpoint

from ..errors import (
    DecodeError,
    ExecutionRejected,
    GasEstimationFailed,
    NodeUnavailable,
    ReceiptTimeout,
    TracingUnsupported,
)
from ..simulation.models import SimulationRequest, SimulationStrategy, parse_quantity
from ..simulation.traces import CallTree, FlatTrace, RawTrace

logger = logging.getLogger(__name__)


# ERC-20 ABI（仅包含需要的函数）
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
]

METHOD_NOT_FOUND = -32601

RECEIPT_QUANTITY_FIELDS = (
    "status",
    "gasUsed",
    "cumulativeGasUsed",
    "effectiveGasPrice",
    "blockNumber",
    "transactionIndex",
)
TRANSACTION_QUANTITY_FIELDS = (
    "value",
    "gas",
    "gasPrice",
    "nonce",
    "blockNumber",
    "transactionIndex",
)

TRANSPORT_ERRORS = (requests.exceptions.RequestException, OSError, Web3Exception)
# 只读调用中值得重试的瞬时错误（网络 / 超时）
TRANSIENT_READ_ERRORS = (requests.exceptions.RequestException, OSError)


def to_int(value: Any) -> int:
    """节点返回的数值（0x 十六进制或整数）转为 int"""
    if value is None:
        raise DecodeError("缺少数值字段")
    try:
        return parse_quantity(value)
    except ValueError as e:
        raise DecodeError(str(e)) from e


def to_hex(value: int) -> str:
    """int 转为 JSON-RPC quantity 编码"""
    return hex(value)


def _normalize(obj: Dict[str, Any], fields: Tuple[str, ...]) -> Dict[str, Any]:
    normalized = dict(obj)
    for name in fields:
        if normalized.get(name) is not None:
            normalized[name] = to_int(normalized[name])
    return normalized


class RPCResponseError(Exception):
    """节点返回了 JSON-RPC error 对象"""

    def __init__(self, method: str, error: Any):
        if isinstance(error, dict):
            self.code = error.get("code")
            self.message = str(error.get("message", error))
        else:
            self.code = None
            self.message = str(error)
        self.method = method
        super().__init__(f"{method}: {self.message}")

    @property
    def unsupported(self) -> bool:
        """节点是否不支持该方法"""
        if self.code == METHOD_NOT_FOUND:
            return True
        text = self.message.lower()
        return any(
            hint in text
            for hint in ("method not found", "not supported", "does not exist", "unknown method", "not available")
        )


def backoff_sleep(attempt: int, base: float = 0.2, cap: float = 2.0) -> None:
    t = min(cap, base * (2 ** attempt))
    t *= 0.7 + random.random() * 0.6
    time.sleep(t)


class NodeGateway:
    """
    节点网关

    Args:
        w3: 已连接到节点的 Web3 实例
        metadata_retries: Token 元数据读取在传输错误时的重试次数
        retry_backoff: 重试退避基数（秒）
    """

    def __init__(self, w3: Web3, metadata_retries: int = 2, retry_backoff: float = 0.2):
        self.w3 = w3
        self.metadata_retries = metadata_retries
        self.retry_backoff = retry_backoff
        self._lock = threading.Lock()

    @classmethod
    def from_url(cls, rpc_url: str, request_timeout: float = 30.0, **kwargs) -> "NodeGateway":
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        return cls(w3, **kwargs)

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """独占该连接，保证快照 / 回滚成对且不交错"""
        with self._lock:
            yield

    # ------------------------------------------------------------------
    # 基础请求
    # ------------------------------------------------------------------

    def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        发送原始 JSON-RPC 请求

        Raises:
            NodeUnavailable: 连接失败或节点无响应
            RPCResponseError: 节点返回 error 对象
        """
        try:
            response = self.w3.provider.make_request(RPCEndpoint(method), params or [])
        except TRANSPORT_ERRORS as e:
            raise NodeUnavailable(f"{method} 请求失败: {e}") from e

        if not isinstance(response, dict):
            raise NodeUnavailable(f"{method} 返回了无效响应: {response!r}")
        if response.get("error") is not None:
            raise RPCResponseError(method, response["error"])
        return response.get("result")

    # ------------------------------------------------------------------
    # 交易执行
    # ------------------------------------------------------------------

    @staticmethod
    def build_tx_params(request: SimulationRequest, include_gas: bool = True) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "from": request.tx_from,
            "value": to_hex(request.tx_value),
        }
        if request.tx_to is not None:
            params["to"] = request.tx_to
        if request.tx_data and request.tx_data != "0x":
            params["data"] = request.tx_data
        if include_gas:
            if request.gas_limit is not None:
                params["gas"] = to_hex(request.gas_limit)
            if request.gas_price is not None:
                params["gasPrice"] = to_hex(request.gas_price)
        return params

    def estimate_gas(self, request: SimulationRequest) -> int:
        """eth_estimateGas，失败通常意味着交易会回滚"""
        try:
            result = self.request("eth_estimateGas", [self.build_tx_params(request, include_gas=False)])
            return to_int(result)
        except (RPCResponseError, DecodeError) as e:
            raise GasEstimationFailed(f"Gas 估算失败（交易可能会回滚）: {e}") from e

    def send_transaction(self, request: SimulationRequest) -> str:
        """
        eth_sendTransaction（不签名）

        需要节点能直接控制发送者账户（已解锁或被模拟）。
        """
        try:
            tx_hash = self.request("eth_sendTransaction", [self.build_tx_params(request)])
        except RPCResponseError as e:
            raise ExecutionRejected(f"节点拒绝执行交易: {e.message}") from e
        if not isinstance(tx_hash, str):
            raise ExecutionRejected(f"eth_sendTransaction 未返回交易哈希: {tx_hash!r}")
        return tx_hash

    def impersonate(self, address: str) -> bool:
        try:
            self.request("anvil_impersonateAccount", [address])
            return True
        except (RPCResponseError, NodeUnavailable) as e:
            logger.warning(f"无法模拟账户 {address}: {e}")
            return False

    def stop_impersonating(self, address: str) -> None:
        try:
            self.request("anvil_stopImpersonatingAccount", [address])
        except (RPCResponseError, NodeUnavailable) as e:
            logger.warning(f"停止模拟账户 {address} 失败: {e}")

    @contextmanager
    def impersonating(self, address: str) -> Iterator[bool]:
        active = self.impersonate(address)
        try:
            yield active
        finally:
            if active:
                self.stop_impersonating(address)

    # ------------------------------------------------------------------
    # 结果读取
    # ------------------------------------------------------------------

    def wait_for_receipt(
        self,
        tx_hash: str,
        timeout: float = 30.0,
        poll_interval: float = 0.1,
        cancel=None,
    ) -> Dict[str, Any]:
        """轮询 eth_getTransactionReceipt 直到交易被打包"""
        deadline = time.monotonic() + timeout

        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                receipt = self.request("eth_getTransactionReceipt", [tx_hash])
            except RPCResponseError as e:
                raise ReceiptTimeout(f"无法获取交易回执 {tx_hash}: {e.message}") from e

            if receipt:
                return _normalize(receipt, RECEIPT_QUANTITY_FIELDS)

            if time.monotonic() >= deadline:
                raise ReceiptTimeout(f"等待交易回执超时 ({timeout}s): {tx_hash}")
            time.sleep(poll_interval)

    def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        try:
            tx = self.request("eth_getTransactionByHash", [tx_hash])
        except RPCResponseError as e:
            raise NodeUnavailable(f"无法获取交易 {tx_hash}: {e.message}") from e
        if not tx:
            raise NodeUnavailable(f"交易不存在: {tx_hash}")
        return _normalize(tx, TRANSACTION_QUANTITY_FIELDS)

    def fetch_trace(self, tx_hash: str, strategy: SimulationStrategy) -> RawTrace:
        """按策略获取 trace，返回对应的 trace 形态"""
        if strategy == SimulationStrategy.FLAT_TRACE:
            method, params = "trace_transaction", [tx_hash]
        elif strategy == SimulationStrategy.CALL_TREE:
            method, params = "debug_traceTransaction", [tx_hash, {"tracer": "callTracer"}]
        else:
            raise ValueError(f"策略 {strategy.value} 不需要 trace")

        try:
            result = self.request(method, params)
        except RPCResponseError as e:
            raise TracingUnsupported(f"节点不支持 {method}: {e.message}") from e
        if result is None:
            raise TracingUnsupported(f"{method} 未返回 trace 数据")

        if strategy == SimulationStrategy.FLAT_TRACE:
            return FlatTrace(records=result if isinstance(result, list) else [])
        return CallTree(root=result if isinstance(result, dict) else None)

    # ------------------------------------------------------------------
    # 只读调用
    # ------------------------------------------------------------------

    def read_token_metadata(self, token_address: str) -> Tuple[Optional[str], Optional[int]]:
        """读取 ERC-20 symbol / decimals，任何失败都退化为 None"""
        contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(token_address), abi=ERC20_ABI
        )
        symbol = self._read_with_retry(contract.functions.symbol().call, f"{token_address}.symbol")
        decimals = self._read_with_retry(contract.functions.decimals().call, f"{token_address}.decimals")

        if not isinstance(symbol, str):
            symbol = None
        if isinstance(decimals, bool) or not isinstance(decimals, int):
            decimals = None
        return symbol, decimals

    def _read_with_retry(self, call: Callable[[], Any], label: str) -> Optional[Any]:
        for attempt in range(self.metadata_retries + 1):
            try:
                return call()
            except TRANSIENT_READ_ERRORS as e:
                if attempt >= self.metadata_retries:
                    logger.debug(f"读取 {label} 失败（已重试 {attempt} 次）: {e}")
                    return None
                backoff_sleep(attempt, base=self.retry_backoff)
            except Exception as e:
                logger.debug(f"读取 {label} 失败: {e}")
                return None
        return None
