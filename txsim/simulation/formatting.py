"""
转账记录的展示辅助函数（纯函数，不属于核心契约）
"""

from typing import List, Sequence

from .models import (
    FungibleTransfer,
    NativeTransfer,
    NonFungibleTransfer,
    TransferKind,
)

NATIVE_DECIMALS = 18


def format_units(amount: int, decimals: int) -> str:
    """将最小单位整数按精度格式化为十进制字符串，如 1500000000000000000, 18 -> "1.5" """
    if decimals <= 0:
        return str(amount)
    # 整数运算，避免 Decimal 上下文精度截断 uint256
    whole, fraction = divmod(amount, 10**decimals)
    if fraction == 0:
        return str(whole)
    return f"{whole}.{str(fraction).rjust(decimals, '0').rstrip('0')}"


def format_transfer_summary(transfers: Sequence, native_symbol: str = "ETH") -> str:
    """按转账类别分组输出数量与金额"""
    native: List[NativeTransfer] = [t for t in transfers if t.kind == TransferKind.NATIVE]
    fungible: List[FungibleTransfer] = [t for t in transfers if t.kind == TransferKind.FUNGIBLE]
    non_fungible: List[NonFungibleTransfer] = [
        t for t in transfers if t.kind == TransferKind.NON_FUNGIBLE
    ]

    lines = ["========== 模拟交易中的转账记录 =========="]

    if native:
        lines.append("")
        lines.append(f"{native_symbol} 转账 ({len(native)}):")
        for index, transfer in enumerate(native, start=1):
            amount = transfer.formatted_amount or format_units(transfer.amount, NATIVE_DECIMALS)
            lines.append(f"  {index}. {transfer.from_address} -> {transfer.to_address}")
            lines.append(f"     金额: {amount} {native_symbol}")

    if fungible:
        lines.append("")
        lines.append(f"ERC20 转账 ({len(fungible)}):")
        for index, transfer in enumerate(fungible, start=1):
            symbol = transfer.symbol or "未知代币"
            lines.append(f"  {index}. {transfer.from_address} -> {transfer.to_address}")
            lines.append(f"     代币: {transfer.token_address} ({symbol})")
            lines.append(f"     金额: {transfer.formatted_amount}")

    if non_fungible:
        lines.append("")
        lines.append(f"ERC721 转账 ({len(non_fungible)}):")
        for index, transfer in enumerate(non_fungible, start=1):
            lines.append(f"  {index}. {transfer.from_address} -> {transfer.to_address}")
            lines.append(f"     NFT: {transfer.token_address}")
            lines.append(f"     Token ID: {transfer.token_id}")

    lines.append("")
    lines.append(f"总计: {len(transfers)} 笔转账")
    return "\n".join(lines)
