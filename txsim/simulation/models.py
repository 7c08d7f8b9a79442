"""
Simulation Data Models

定义模拟执行过程中使用的数据结构。
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_serializer, field_validator
from web3 import Web3

from ..errors import ErrorKind


ZERO_ADDRESS = "0x" + "0" * 40


class SimulationStrategy(str, Enum):
    """模拟策略（保真度依次递增）"""
    RECEIPT = "receipt"          # 仅分析回执与日志
    FLAT_TRACE = "trace"         # trace_transaction (Parity/Erigon)
    CALL_TREE = "debug_trace"    # debug_traceTransaction + callTracer (Geth)


class TransferKind(str, Enum):
    """转账类别"""
    NATIVE = "native"
    FUNGIBLE = "fungible"
    NON_FUNGIBLE = "non_fungible"


def validate_address(v: str) -> str:
    """验证以太坊地址格式并转为 checksum 形式"""
    if not isinstance(v, str) or not v.startswith("0x") or len(v) != 42:
        raise ValueError(f"无效的以太坊地址: {v}")
    try:
        int(v, 16)
    except ValueError:
        raise ValueError(f"无效的以太坊地址: {v}")
    return Web3.to_checksum_address(v)


def parse_quantity(v) -> int:
    """接受 int、十进制字符串或 0x 十六进制字符串"""
    if isinstance(v, bool):
        raise ValueError(f"无效的数值: {v}")
    if isinstance(v, int):
        return v
    if isinstance(v, str):
        text = v.strip()
        try:
            return int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            raise ValueError(f"无效的数值: {v}")
    raise ValueError(f"无效的数值: {v}")


class NativeTransfer(BaseModel):
    """原生币转账（tx value 或内部调用 value）"""
    kind: Literal[TransferKind.NATIVE] = TransferKind.NATIVE
    from_address: str = Field(..., description="转出地址")
    to_address: str = Field(..., description="转入地址")
    amount: int = Field(..., ge=0, description="金额（wei）")
    formatted_amount: str = Field(default="", description="以 ether 计的金额")

    @field_serializer("amount", when_used="json")
    def serialize_amount(self, value: int) -> str:
        return str(value)


class FungibleTransfer(BaseModel):
    """ERC-20 Transfer 事件"""
    kind: Literal[TransferKind.FUNGIBLE] = TransferKind.FUNGIBLE
    token_address: str = Field(..., description="Token 合约地址")
    from_address: str = Field(..., description="转出地址")
    to_address: str = Field(..., description="转入地址")
    amount: int = Field(..., ge=0, description="原始金额（最小单位）")
    formatted_amount: str = Field(..., description="按 decimals 格式化的金额，未知时为原始整数字符串")
    symbol: Optional[str] = Field(None, description="Token 符号")
    decimals: Optional[int] = Field(None, ge=0, description="Token 精度")

    @field_serializer("amount", when_used="json")
    def serialize_amount(self, value: int) -> str:
        return str(value)


class NonFungibleTransfer(BaseModel):
    """ERC-721 Transfer 事件"""
    kind: Literal[TransferKind.NON_FUNGIBLE] = TransferKind.NON_FUNGIBLE
    token_address: str = Field(..., description="NFT 合约地址")
    from_address: str = Field(..., description="转出地址")
    to_address: str = Field(..., description="转入地址")
    token_id: int = Field(..., ge=0, description="Token ID")

    @field_serializer("token_id", when_used="json")
    def serialize_token_id(self, value: int) -> str:
        return str(value)


TransferRecord = Annotated[
    Union[NativeTransfer, FungibleTransfer, NonFungibleTransfer],
    Field(discriminator="kind"),
]

TokenTransfer = Union[FungibleTransfer, NonFungibleTransfer]


class SimulationRequest(BaseModel):
    """模拟请求，构造一次、消费一次"""
    tx_from: str = Field(..., description="交易发起者地址")
    tx_to: Optional[str] = Field(None, description="交易目标地址（为空表示合约创建）")
    tx_value: int = Field(default=0, ge=0, description="交易 value（wei）")
    tx_data: str = Field(default="0x", description="交易 calldata")
    gas_limit: Optional[int] = Field(None, gt=0, description="gas 限制（为空则由节点估算）")
    gas_price: Optional[int] = Field(None, ge=0, description="gas 价格（为空则由节点决定）")

    @field_validator("tx_from")
    @classmethod
    def validate_from(cls, v: str) -> str:
        return validate_address(v)

    @field_validator("tx_to")
    @classmethod
    def validate_to(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return validate_address(v)

    @field_validator("tx_value", "gas_limit", "gas_price", mode="before")
    @classmethod
    def validate_quantity(cls, v):
        """验证 tx_value 等数值是有效的十六进制或十进制"""
        if v is None:
            return v
        return parse_quantity(v)

    @field_validator("tx_data")
    @classmethod
    def validate_tx_data(cls, v: str) -> str:
        if not v:
            return "0x"
        if not v.startswith("0x") or len(v) % 2 != 0:
            raise ValueError(f"无效的 calldata: {v[:20]}")
        if len(v) > 2:
            try:
                bytes.fromhex(v[2:])
            except ValueError:
                raise ValueError(f"无效的 calldata: {v[:20]}")
        return v.lower()

    @property
    def is_contract_creation(self) -> bool:
        return self.tx_to is None


class SimulationResult(BaseModel):
    """模拟执行结果：完全成功或完全失败"""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    strategy: SimulationStrategy = Field(..., description="使用的模拟策略")

    # 执行状态
    success: bool = Field(..., description="模拟是否成功")
    tx_hash: Optional[str] = Field(None, description="模拟交易哈希")
    gas_used: Optional[int] = Field(None, description="实际消耗的 gas")
    gas_estimate: Optional[int] = Field(None, description="预估 gas")

    # 转账记录（发现顺序）
    transfers: List[TransferRecord] = Field(default_factory=list)

    warnings: List[str] = Field(default_factory=list)
    error_kind: Optional[ErrorKind] = Field(None, description="失败类别")
    error_message: Optional[str] = Field(None, description="失败原因")

    @property
    def native_transfers(self) -> List[NativeTransfer]:
        return [t for t in self.transfers if t.kind == TransferKind.NATIVE]

    @property
    def fungible_transfers(self) -> List[FungibleTransfer]:
        return [t for t in self.transfers if t.kind == TransferKind.FUNGIBLE]

    @property
    def non_fungible_transfers(self) -> List[NonFungibleTransfer]:
        return [t for t in self.transfers if t.kind == TransferKind.NON_FUNGIBLE]

    @classmethod
    def failure(
        cls,
        strategy: SimulationStrategy,
        kind: ErrorKind,
        message: str,
        tx_hash: Optional[str] = None,
    ) -> "SimulationResult":
        return cls(
            strategy=strategy,
            success=False,
            tx_hash=tx_hash,
            error_kind=kind,
            error_message=message,
        )
