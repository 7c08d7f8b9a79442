"""
SnapshotManager - 节点状态快照

evm_snapshot / evm_revert 的封装。节点上的快照是一个全局栈，
调用方需要先通过 NodeGateway.exclusive() 独占连接。
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from ..errors import NodeUnavailable, UnsupportedMethod
from .gateway import NodeGateway, RPCResponseError

logger = logging.getLogger(__name__)


class SnapshotManager:
    """快照管理器"""

    def __init__(self, gateway: NodeGateway):
        self.gateway = gateway

    def create(self) -> str:
        """
        创建快照

        Returns:
            节点返回的快照 ID，只能被回滚一次

        Raises:
            UnsupportedMethod: 节点不支持 evm_snapshot
            NodeUnavailable: 节点不可用
        """
        try:
            handle = self.gateway.request("evm_snapshot")
        except RPCResponseError as e:
            if e.unsupported:
                raise UnsupportedMethod("evm_snapshot", e.message) from e
            raise NodeUnavailable(f"创建快照失败: {e.message}") from e

        if handle is None:
            raise NodeUnavailable("evm_snapshot 未返回快照 ID")

        logger.debug(f"已创建快照 {handle}")
        return handle

    def revert(self, handle: str) -> bool:
        """回滚到快照；失败只记录日志，不抛出"""
        try:
            reverted = self.gateway.request("evm_revert", [handle])
        except (RPCResponseError, NodeUnavailable) as e:
            logger.error(f"回滚快照 {handle} 失败，节点状态可能已被污染: {e}")
            return False
        except Exception as e:
            # 在 checkpoint 的 finally 中调用，不能覆盖调用方的原始异常
            logger.error(f"回滚快照 {handle} 时出现意外错误: {e}", exc_info=True)
            return False

        if reverted is not True:
            logger.warning(f"节点拒绝回滚快照 {handle}: {reverted!r}")
            return False

        logger.debug(f"已回滚快照 {handle}")
        return True

    @contextmanager
    def checkpoint(self) -> Iterator[str]:
        """
        快照作用域

        进入时创建快照，退出时（正常返回、异常、取消）回滚且只回滚一次。
        创建失败时直接抛出，没有需要回滚的快照。
        """
        handle = self.create()
        try:
            yield handle
        finally:
            self.revert(handle)
