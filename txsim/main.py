"""
txsim - FastAPI Main Entry

对外暴露交易模拟 HTTP 接口，并负责节点连接的生命周期。
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import uvicorn

from . import __version__
from .config import get_settings
from .node.anvil import AnvilProcess
from .node.gateway import NodeGateway
from .simulation.formatting import format_transfer_summary
from .simulation.models import SimulationRequest, SimulationStrategy
from .simulation.simulator import TransactionSimulator


# =============================================================================
# Logging Configuration
# =============================================================================

def setup_logging(level: str = "INFO"):
    """配置日志"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )


# =============================================================================
# Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理：节点连接在进程内只创建一次"""
    settings = get_settings()
    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    anvil: Optional[AnvilProcess] = None
    try:
        if getattr(app.state, "simulator", None) is None:
            rpc_url = settings.rpc_url
            if settings.use_local_anvil:
                anvil = AnvilProcess(
                    fork_url=settings.anvil_fork_url,
                    fork_block=settings.anvil_fork_block,
                    anvil_path=settings.anvil_binary_path,
                    base_port=settings.anvil_base_port,
                )
                rpc_url = anvil.start().rpc_url

            gateway = NodeGateway.from_url(
                rpc_url,
                request_timeout=settings.rpc_request_timeout_seconds,
                metadata_retries=settings.metadata_retries,
            )
            app.state.simulator = TransactionSimulator.from_settings(settings, gateway=gateway)
            logger.info(f"txsim 已连接节点: {rpc_url}")

        yield
    finally:
        if anvil is not None:
            anvil.stop()
        logger.info("txsim 关闭中...")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="txsim",
    description="Snapshot-isolated EVM transaction simulator",
    version=__version__,
    lifespan=lifespan,
)


class SimulateRequestBody(SimulationRequest):
    """POST /api/v1/simulate 请求体"""
    strategy: Optional[SimulationStrategy] = None


@app.get("/health")
async def health_check():
    """健康检查端点"""
    return {
        "status": "healthy",
        "service": "txsim",
        "version": __version__,
    }


@app.post("/api/v1/simulate")
async def simulate_transaction(body: SimulateRequestBody):
    """
    模拟一笔交易

    ## 请求示例
    ```json
    {
      "tx_from": "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
      "tx_to": "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
      "tx_value": "1500000000000000000",
      "strategy": "debug_trace"
    }
    ```
    """
    simulator: TransactionSimulator = app.state.simulator
    request = SimulationRequest(**body.model_dump(exclude={"strategy"}))

    result = await simulator.simulate_async(request, body.strategy)

    payload = result.model_dump(mode="json")
    payload["summary"] = format_transfer_summary(result.transfers) if result.success else None
    return payload


# =============================================================================
# Error Handlers
# =============================================================================


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """请求体校验失败"""
    return JSONResponse(
        status_code=400,
        content={"error": {"message": str(exc), "type": "invalid_request_error"}},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """处理值错误"""
    return JSONResponse(
        status_code=400,
        content={"error": {"message": str(exc), "type": "invalid_request_error"}},
    )


# =============================================================================
# Main
# =============================================================================

def main():
    """主入口"""
    settings = get_settings()

    uvicorn.run(
        "txsim.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
