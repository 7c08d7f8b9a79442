"""
TransactionSimulator - 基于快照的交易模拟

流程：
1. 创建快照 (evm_snapshot)
2. 估算 Gas (eth_estimateGas)
3. 执行交易 (eth_sendTransaction，模拟发送者)
4. 等待回执 (eth_getTransactionReceipt)
5. 分析：交易 value -> 日志中的 Token 转账 -> trace 中的内部转账
6. 回滚到快照 (evm_revert)，任何路径都会执行
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from web3 import Web3

from ..errors import (
    ErrorKind,
    ExecutionRejected,
    GasEstimationFailed,
    SimulationCancelled,
    SimulationError,
    TracingUnsupported,
)
from ..node.gateway import NodeGateway, RPCResponseError
from ..node.snapshots import SnapshotManager
from .formatting import NATIVE_DECIMALS, format_units
from .logs import TransferLogAnalyzer
from .models import (
    NativeTransfer,
    SimulationRequest,
    SimulationResult,
    SimulationStrategy,
)
from .traces import decode_trace

logger = logging.getLogger(__name__)


class CancelToken:
    """
    取消令牌

    调用方可随时 cancel()；超过 deadline 也视为已取消。
    模拟器只在阶段之间检查，已创建的快照仍会被回滚。
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SimulationCancelled("模拟已被调用方取消")
        if self.cancelled:
            raise SimulationCancelled("模拟超过截止时间")


@dataclass
class _Attempt:
    """单次模拟过程中的中间状态"""
    request: SimulationRequest
    strategy: SimulationStrategy
    cancel: CancelToken
    tx_hash: Optional[str] = None
    gas_estimate: Optional[int] = None
    warnings: List[str] = field(default_factory=list)

    def checkpoint(self) -> None:
        self.cancel.raise_if_cancelled()


class TransactionSimulator:
    """
    交易模拟器

    Args:
        gateway: 节点网关（同一连接上的模拟会被串行化）
        receipt_timeout: 等待回执的超时（秒）
        receipt_poll_interval: 回执轮询间隔（秒）
        simulation_timeout: 单次模拟的默认截止时间（秒），None 表示不限
        trace_fallback: 节点不支持 trace 时是否退化为仅分析回执
        strict_gas_estimation: Gas 估算失败时是否中止模拟（节点不支持 eth_estimateGas 时始终只记录警告）
        impersonate_sender: 执行前是否调用 anvil_impersonateAccount
        enrich_metadata: 是否读取 ERC-20 symbol / decimals
        default_strategy: simulate() 未指定策略时使用的策略
    """

    def __init__(
        self,
        gateway: NodeGateway,
        receipt_timeout: float = 30.0,
        receipt_poll_interval: float = 0.1,
        simulation_timeout: Optional[float] = None,
        trace_fallback: bool = False,
        strict_gas_estimation: bool = False,
        impersonate_sender: bool = True,
        enrich_metadata: bool = True,
        default_strategy: SimulationStrategy = SimulationStrategy.RECEIPT,
    ):
        self.gateway = gateway
        self.snapshots = SnapshotManager(gateway)
        self.log_analyzer = TransferLogAnalyzer(gateway if enrich_metadata else None)

        self.receipt_timeout = receipt_timeout
        self.receipt_poll_interval = receipt_poll_interval
        self.simulation_timeout = simulation_timeout
        self.trace_fallback = trace_fallback
        self.strict_gas_estimation = strict_gas_estimation
        self.impersonate_sender = impersonate_sender
        self.default_strategy = default_strategy

    @classmethod
    def from_settings(cls, settings, gateway: Optional[NodeGateway] = None) -> "TransactionSimulator":
        if gateway is None:
            gateway = NodeGateway.from_url(
                settings.rpc_url,
                request_timeout=settings.rpc_request_timeout_seconds,
                metadata_retries=settings.metadata_retries,
            )
        return cls(
            gateway,
            receipt_timeout=settings.receipt_timeout_seconds,
            receipt_poll_interval=settings.receipt_poll_interval_seconds,
            simulation_timeout=settings.simulation_timeout_seconds,
            trace_fallback=settings.trace_fallback,
            strict_gas_estimation=settings.strict_gas_estimation,
            impersonate_sender=settings.impersonate_sender,
            default_strategy=settings.default_strategy,
        )

    # ------------------------------------------------------------------
    # 对外接口
    # ------------------------------------------------------------------

    def simulate(
        self,
        request: SimulationRequest,
        strategy: Optional[SimulationStrategy] = None,
        cancel: Optional[CancelToken] = None,
    ) -> SimulationResult:
        """
        执行交易模拟

        无论成功与否，返回前快照都已被回滚；失败时结果中不包含任何转账。

        Args:
            request: 模拟请求
            strategy: 模拟策略，默认为 default_strategy
            cancel: 取消令牌，默认按 simulation_timeout 创建

        Returns:
            SimulationResult: 模拟结果
        """
        strategy = SimulationStrategy(strategy or self.default_strategy)
        attempt = _Attempt(
            request=request,
            strategy=strategy,
            cancel=cancel or CancelToken(self.simulation_timeout),
        )
        tag = f"[{strategy.value}]"

        try:
            attempt.checkpoint()
            with self.gateway.exclusive():
                with self.snapshots.checkpoint() as snapshot_id:
                    logger.info(f"{tag} 已创建快照 {snapshot_id}")
                    result = self._run(attempt)
            logger.info(
                f"{tag} 模拟完成: {len(result.transfers)} 笔转账, Gas 使用 {result.gas_used}"
            )
            return result

        except SimulationError as e:
            logger.error(f"{tag} 模拟交易失败 ({e.kind.value}): {e}")
            return SimulationResult.failure(strategy, e.kind, str(e), tx_hash=attempt.tx_hash)
        except Exception as e:
            logger.error(f"{tag} 模拟过程中出现意外错误: {e}", exc_info=True)
            return SimulationResult.failure(
                strategy, ErrorKind.UNEXPECTED, str(e), tx_hash=attempt.tx_hash
            )

    def simulate_basic(self, request: SimulationRequest, cancel: Optional[CancelToken] = None) -> SimulationResult:
        """仅分析回执与日志"""
        return self.simulate(request, SimulationStrategy.RECEIPT, cancel)

    def simulate_with_trace(self, request: SimulationRequest, cancel: Optional[CancelToken] = None) -> SimulationResult:
        """trace_transaction (Parity/Erigon 风格)"""
        return self.simulate(request, SimulationStrategy.FLAT_TRACE, cancel)

    def simulate_with_debug_trace(
        self, request: SimulationRequest, cancel: Optional[CancelToken] = None
    ) -> SimulationResult:
        """debug_traceTransaction + callTracer (Geth 风格)"""
        return self.simulate(request, SimulationStrategy.CALL_TREE, cancel)

    async def simulate_async(
        self,
        request: SimulationRequest,
        strategy: Optional[SimulationStrategy] = None,
        cancel: Optional[CancelToken] = None,
    ) -> SimulationResult:
        """在工作线程中执行阻塞的模拟流程；任务被取消时通知模拟器尽快回滚"""
        cancel = cancel or CancelToken(self.simulation_timeout)
        try:
            return await asyncio.to_thread(self.simulate, request, strategy, cancel)
        except asyncio.CancelledError:
            cancel.cancel()
            raise

    # ------------------------------------------------------------------
    # 流水线各阶段（任何异常都直接向上抛出，由快照作用域负责回滚）
    # ------------------------------------------------------------------

    def _run(self, attempt: _Attempt) -> SimulationResult:
        request = attempt.request
        tag = f"[{attempt.strategy.value}]"

        attempt.checkpoint()
        attempt.gas_estimate = self._estimate_gas(attempt)

        attempt.checkpoint()
        attempt.tx_hash = self._execute(request)
        logger.info(f"{tag} 模拟交易哈希: {attempt.tx_hash}")

        receipt = self.gateway.wait_for_receipt(
            attempt.tx_hash,
            timeout=self.receipt_timeout,
            poll_interval=self.receipt_poll_interval,
            cancel=attempt.cancel,
        )
        if receipt.get("status") == 0:
            raise ExecutionRejected(f"交易执行回滚: {attempt.tx_hash}")

        gas_used = receipt.get("gasUsed")
        logger.info(f"{tag} 实际 Gas 使用: {gas_used}")

        attempt.checkpoint()
        transfers = self._collect_transfers(attempt, receipt)

        return SimulationResult(
            strategy=attempt.strategy,
            success=True,
            tx_hash=attempt.tx_hash,
            gas_used=gas_used,
            gas_estimate=attempt.gas_estimate,
            transfers=transfers,
            warnings=attempt.warnings,
        )

    def _estimate_gas(self, attempt: _Attempt) -> Optional[int]:
        try:
            estimated = self.gateway.estimate_gas(attempt.request)
        except GasEstimationFailed as e:
            cause = e.__cause__
            unsupported = isinstance(cause, RPCResponseError) and cause.unsupported
            if self.strict_gas_estimation and not unsupported:
                raise
            attempt.warnings.append(str(e))
            logger.warning(f"[{attempt.strategy.value}] {e}")
            return None
        logger.info(f"[{attempt.strategy.value}] 估算 Gas: {estimated}")
        return estimated

    def _execute(self, request: SimulationRequest) -> str:
        if not self.impersonate_sender:
            return self.gateway.send_transaction(request)
        with self.gateway.impersonating(request.tx_from):
            return self.gateway.send_transaction(request)

    def _collect_transfers(self, attempt: _Attempt, receipt: Dict[str, Any]) -> List[Any]:
        """按发现顺序：交易 value -> 日志 -> trace 内部转账"""
        transfers: List[Any] = []

        tx = self.gateway.get_transaction(attempt.tx_hash)
        top_level = self._top_level_transfer(tx, receipt)
        if top_level is not None:
            transfers.append(top_level)

        transfers.extend(self.log_analyzer.analyze(receipt.get("logs")))

        if attempt.strategy != SimulationStrategy.RECEIPT:
            attempt.checkpoint()
            transfers.extend(self._internal_transfers(attempt))

        return transfers

    @staticmethod
    def _top_level_transfer(tx: Dict[str, Any], receipt: Dict[str, Any]) -> Optional[NativeTransfer]:
        value = tx.get("value") or 0
        if value <= 0:
            return None
        to_address = tx.get("to") or receipt.get("contractAddress")
        if not to_address:
            logger.debug("交易 value > 0 但无法确定接收地址，已跳过")
            return None
        return NativeTransfer(
            from_address=Web3.to_checksum_address(tx["from"]),
            to_address=Web3.to_checksum_address(to_address),
            amount=value,
            formatted_amount=format_units(value, NATIVE_DECIMALS),
        )

    def _internal_transfers(self, attempt: _Attempt) -> List[NativeTransfer]:
        tag = f"[{attempt.strategy.value}]"
        try:
            trace = self.gateway.fetch_trace(attempt.tx_hash, attempt.strategy)
        except TracingUnsupported as e:
            if not self.trace_fallback:
                raise
            attempt.warnings.append(f"{e}，仅返回回执分析结果")
            logger.warning(f"{tag} {e}，退化为回执分析")
            return []

        logger.info(f"{tag} 获取到 trace 数据")
        # 顶层转账已由交易对象给出，这里只保留内部转账
        return decode_trace(trace, include_top_level=False)
