"""
AnvilProcess - 本地 Anvil 分叉节点

可选组件：没有现成的模拟节点时，动态启动一个 Foundry Anvil 主网分叉。
"""

import logging
import socket
import subprocess
import time
from typing import List, Optional

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def find_free_port(start_port: int = 8545, max_attempts: int = 100) -> int:
    """查找可用端口"""
    for port in range(start_port, start_port + max_attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            if s.connect_ex(("127.0.0.1", port)) != 0:
                return port
    raise OSError(f"无法在 {start_port}-{start_port + max_attempts} 范围内找到可用端口")


class AnvilProcessInfo(BaseModel):
    """Anvil 进程信息"""
    pid: int = Field(..., description="进程 ID")
    port: int = Field(..., description="监听端口")
    rpc_url: str = Field(..., description="RPC URL")
    fork_url: str = Field(..., description="分叉源 URL")
    fork_block: Optional[int] = Field(None, description="分叉区块号")


class AnvilProcess:
    """
    Anvil 分叉节点进程

    Args:
        fork_url: 主网 RPC URL
        fork_block: 分叉区块号（None 为最新区块）
        anvil_path: anvil 可执行文件路径
        base_port: 起始端口
        ready_timeout: 等待节点就绪的时间（秒）
    """

    def __init__(
        self,
        fork_url: str,
        fork_block: Optional[int] = None,
        anvil_path: str = "anvil",
        base_port: int = 8545,
        ready_timeout: float = 10.0,
    ):
        self.fork_url = fork_url
        self.fork_block = fork_block
        self.anvil_path = anvil_path
        self.base_port = base_port
        self.ready_timeout = ready_timeout

        self._process: Optional[subprocess.Popen] = None
        self._info: Optional[AnvilProcessInfo] = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def rpc_url(self) -> str:
        if self._info is None:
            raise RuntimeError("Anvil 进程未启动")
        return self._info.rpc_url

    @property
    def info(self) -> Optional[AnvilProcessInfo]:
        return self._info

    def build_command(self, port: int) -> List[str]:
        cmd = [
            self.anvil_path,
            "--fork-url",
            self.fork_url,
            "--port",
            str(port),
            "--host",
            "127.0.0.1",
        ]
        if self.fork_block is not None:
            cmd.extend(["--fork-block-number", str(self.fork_block)])
        return cmd

    def start(self) -> AnvilProcessInfo:
        """启动 Anvil 并等待 RPC 就绪"""
        if self.is_running and self._info is not None:
            return self._info

        port = find_free_port(self.base_port)
        rpc_url = f"http://127.0.0.1:{port}"
        cmd = self.build_command(port)

        logger.info(f"启动 Anvil: {' '.join(cmd)}")
        self._process = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )

        try:
            self._wait_for_ready(rpc_url)
        except RuntimeError:
            self.stop()
            raise

        self._info = AnvilProcessInfo(
            pid=self._process.pid,
            port=port,
            rpc_url=rpc_url,
            fork_url=self.fork_url,
            fork_block=self.fork_block,
        )
        logger.info(f"Anvil 已启动: {rpc_url} (PID: {self._process.pid})")
        return self._info

    def _wait_for_ready(self, rpc_url: str) -> None:
        """轮询 eth_blockNumber 直到节点响应"""
        deadline = time.monotonic() + self.ready_timeout

        while time.monotonic() < deadline:
            if self._process is not None and self._process.poll() is not None:
                raise RuntimeError(f"Anvil 进程已退出 (code={self._process.returncode})")
            try:
                response = httpx.post(
                    rpc_url,
                    json={
                        "jsonrpc": "2.0",
                        "method": "eth_blockNumber",
                        "params": [],
                        "id": 1,
                    },
                    timeout=1,
                )
                if response.status_code == 200:
                    logger.debug("Anvil 就绪")
                    return
            except httpx.HTTPError:
                pass
            time.sleep(0.1)

        raise RuntimeError(f"Anvil 启动超时: {rpc_url}")

    def stop(self) -> None:
        """停止 Anvil 进程"""
        if self._process is not None:
            try:
                self._process.terminate()
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()
            self._process = None
            logger.info("Anvil 进程已停止")

        self._info = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
