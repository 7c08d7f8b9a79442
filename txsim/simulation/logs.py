"""
回执日志分析

从交易回执的日志中识别 ERC-20 / ERC-721 的 Transfer 事件。
两种标准共用同一个事件签名，只能靠 indexed topic 的数量区分：
- 4 个 topic（签名 + from + to + tokenId）: ERC-721
- 3 个 topic（签名 + from + to），金额在 data 中: ERC-20
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from web3 import Web3

from ..errors import DecodeError
from .formatting import format_units
from .models import FungibleTransfer, NonFungibleTransfer, TokenTransfer

logger = logging.getLogger(__name__)


# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_SIGNATURE = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

FUNGIBLE_TOPIC_COUNT = 3
NON_FUNGIBLE_TOPIC_COUNT = 4


class TokenMetadataReader(Protocol):
    def read_token_metadata(self, token_address: str) -> Tuple[Optional[str], Optional[int]]:
        ...


def _hex_text(value: Any) -> str:
    """topic / data 可能是 str、bytes 或 HexBytes，统一成 0x 小写字符串"""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, str):
        text = value.lower()
        return text if text.startswith("0x") else "0x" + text
    raise DecodeError(f"无法识别的十六进制字段: {value!r}")


def _topic_to_address(topic: Any) -> str:
    """取 32 字节 topic 的低 20 字节作为地址"""
    text = _hex_text(topic)
    if len(text) != 66:
        raise DecodeError(f"topic 长度错误: {text}")
    return Web3.to_checksum_address("0x" + text[-40:])


def _hex_to_uint(value: Any) -> int:
    text = _hex_text(value)
    if len(text) <= 2:
        raise DecodeError("空的数值字段")
    try:
        return int(text, 16)
    except ValueError:
        raise DecodeError(f"无效的数值字段: {text[:20]}")


class TransferLogAnalyzer:
    """
    Transfer 事件分析器

    Args:
        metadata_reader: 读取 Token symbol / decimals 的只读接口，
            为 None 时不做元数据补全
    """

    def __init__(self, metadata_reader: Optional[TokenMetadataReader] = None):
        self.metadata_reader = metadata_reader

    def analyze(self, logs: Optional[Iterable[Dict[str, Any]]]) -> List[TokenTransfer]:
        """按日志顺序返回 Token 转账记录，单条日志解析失败不影响其余日志"""
        transfers: List[TokenTransfer] = []
        metadata_cache: Dict[str, Tuple[Optional[str], Optional[int]]] = {}

        for index, log in enumerate(logs or []):
            try:
                transfer = self._decode_log(log, metadata_cache)
            except (DecodeError, ValueError, TypeError, AttributeError, KeyError) as e:
                logger.debug(f"解析日志 #{index} 失败，已跳过: {e}")
                continue
            if transfer is not None:
                transfers.append(transfer)

        return transfers

    def _decode_log(
        self,
        log: Dict[str, Any],
        metadata_cache: Dict[str, Tuple[Optional[str], Optional[int]]],
    ) -> Optional[TokenTransfer]:
        topics = log.get("topics") or []
        if not topics or _hex_text(topics[0]) != TRANSFER_EVENT_SIGNATURE:
            return None

        if len(topics) == NON_FUNGIBLE_TOPIC_COUNT:
            return NonFungibleTransfer(
                token_address=Web3.to_checksum_address(log["address"]),
                from_address=_topic_to_address(topics[1]),
                to_address=_topic_to_address(topics[2]),
                token_id=_hex_to_uint(topics[3]),
            )

        if len(topics) == FUNGIBLE_TOPIC_COUNT:
            token_address = Web3.to_checksum_address(log["address"])
            from_address = _topic_to_address(topics[1])
            to_address = _topic_to_address(topics[2])
            amount = _hex_to_uint(log.get("data"))

            symbol, decimals = self._token_metadata(token_address, metadata_cache)
            formatted = format_units(amount, decimals) if decimals else str(amount)

            return FungibleTransfer(
                token_address=token_address,
                from_address=from_address,
                to_address=to_address,
                amount=amount,
                formatted_amount=formatted,
                symbol=symbol,
                decimals=decimals,
            )

        # 签名匹配但 topic 数量不符合任何标准，按非标准事件忽略
        return None

    def _token_metadata(
        self,
        token_address: str,
        cache: Dict[str, Tuple[Optional[str], Optional[int]]],
    ) -> Tuple[Optional[str], Optional[int]]:
        if self.metadata_reader is None:
            return None, None
        if token_address not in cache:
            try:
                cache[token_address] = self.metadata_reader.read_token_metadata(token_address)
            except Exception as e:
                logger.debug(f"读取 {token_address} 元数据失败: {e}")
                cache[token_address] = (None, None)
        return cache[token_address]
