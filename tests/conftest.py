"""
测试夹具：内存中的 JSON-RPC 节点

FakeNode 模拟 Anvil 的子集：余额、交易、回执、快照栈、
账户模拟、trace 接口与 ERC-20 元数据读取。
"""

import copy
import threading
import time
from typing import Any, Dict, List, Optional

import pytest
from eth_abi import encode
from web3 import Web3
from web3.providers.base import BaseProvider

from txsim.node.gateway import NodeGateway
from txsim.simulation.logs import TRANSFER_EVENT_SIGNATURE
from txsim.simulation.simulator import TransactionSimulator


SENDER = Web3.to_checksum_address("0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266")
RECIPIENT = Web3.to_checksum_address("0x70997970C51812dc3A010C7d01b50e0d17dc79C8")
TOKEN = Web3.to_checksum_address("0x5FbDB2315678afecb367f032d93F642f64180aa3")
NFT = Web3.to_checksum_address("0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512")
BANK = Web3.to_checksum_address("0xD0DB636309D53423B6Bb7A3B318Aaee7CC9CB41A")

SYMBOL_SELECTOR = "0x95d89b41"
DECIMALS_SELECTOR = "0x313ce567"

ONE_ETHER = 10**18


def address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def uint_word(value: int) -> str:
    return "0x" + format(value, "064x")


def erc20_transfer_log(token: str, sender: str, recipient: str, amount: int) -> Dict[str, Any]:
    return {
        "address": token.lower(),
        "topics": [TRANSFER_EVENT_SIGNATURE, address_topic(sender), address_topic(recipient)],
        "data": uint_word(amount),
    }


def erc721_transfer_log(token: str, sender: str, recipient: str, token_id: int) -> Dict[str, Any]:
    return {
        "address": token.lower(),
        "topics": [
            TRANSFER_EVENT_SIGNATURE,
            address_topic(sender),
            address_topic(recipient),
            uint_word(token_id),
        ],
        "data": "0x",
    }


class RPCFailure(Exception):
    def __init__(self, message: str, code: int = -32000):
        self.error = {"code": code, "message": message}


class FakeNode(BaseProvider):
    """内存 JSON-RPC 节点"""

    def __init__(self):
        super().__init__()
        self.balances: Dict[str, int] = {
            SENDER.lower(): 10_000 * ONE_ETHER,
            RECIPIENT.lower(): 10_000 * ONE_ETHER,
        }
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.snapshots: Dict[str, Any] = {}
        self.snapshot_counter = 0
        self.open_snapshots = 0
        self.peak_open_snapshots = 0
        self.unlocked = {SENDER.lower()}
        self.impersonated = set()
        self.token_metadata: Dict[str, tuple] = {}

        # 下一笔交易附带的日志与 trace
        self.next_logs: List[Dict[str, Any]] = []
        self.flat_trace: Optional[List[Dict[str, Any]]] = None
        self.call_tree: Optional[Dict[str, Any]] = None

        self.failures: Dict[str, Dict[str, Any]] = {}
        self.hooks: Dict[str, Any] = {}
        self.revert_execution = False
        self.never_mine = False
        self.snapshot_delay = 0.0
        self.gas_used = 21000

        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------

    def is_connected(self, show_traceback: bool = False) -> bool:
        return True

    def make_request(self, method, params):
        with self._lock:
            self.calls.append((method, params))
        hook = self.hooks.get(method)
        if hook is not None:
            hook()
        if method in self.failures:
            return {"jsonrpc": "2.0", "id": 1, "error": self.failures[method]}
        handler = getattr(self, "_rpc_" + method, None)
        if handler is None:
            return {
                "jsonrpc": "2.0",
                "id": 1,
                "error": {"code": -32601, "message": f"Method not found: {method}"},
            }
        try:
            result = handler(*(params or []))
        except RPCFailure as e:
            return {"jsonrpc": "2.0", "id": 1, "error": e.error}
        return {"jsonrpc": "2.0", "id": 1, "result": result}

    def method_calls(self, method: str) -> List[Any]:
        return [params for name, params in self.calls if name == method]

    def state(self):
        """可观察的节点状态"""
        return dict(self.balances), len(self.transactions)

    # ------------------------------------------------------------------
    # JSON-RPC handlers
    # ------------------------------------------------------------------

    def _rpc_eth_chainId(self):
        return "0x7a69"

    def _rpc_eth_blockNumber(self):
        return hex(len(self.transactions))

    def _rpc_evm_snapshot(self):
        if self.snapshot_delay:
            time.sleep(self.snapshot_delay)
        with self._lock:
            self.snapshot_counter += 1
            snapshot_id = hex(self.snapshot_counter)
            self.snapshots[snapshot_id] = (
                copy.deepcopy(self.balances),
                copy.deepcopy(self.transactions),
                copy.deepcopy(self.receipts),
            )
            self.open_snapshots += 1
            self.peak_open_snapshots = max(self.peak_open_snapshots, self.open_snapshots)
        return snapshot_id

    def _rpc_evm_revert(self, snapshot_id):
        with self._lock:
            if snapshot_id not in self.snapshots:
                return False
            self.balances, self.transactions, self.receipts = self.snapshots[snapshot_id]
            # 快照是栈：回滚会丢弃该快照及其之后的快照
            for key in [k for k in self.snapshots if int(k, 16) >= int(snapshot_id, 16)]:
                del self.snapshots[key]
            self.open_snapshots -= 1
        return True

    def _rpc_anvil_impersonateAccount(self, address):
        self.impersonated.add(address.lower())
        return None

    def _rpc_anvil_stopImpersonatingAccount(self, address):
        self.impersonated.discard(address.lower())
        return None

    def _rpc_eth_estimateGas(self, tx):
        return hex(self.gas_used)

    def _rpc_eth_sendTransaction(self, tx):
        sender = tx["from"].lower()
        if sender not in self.unlocked and sender not in self.impersonated:
            raise RPCFailure(f"No Signer available for {tx['from']}")

        value = int(tx.get("value", "0x0"), 16)
        recipient = tx.get("to")
        if self.balances.get(sender, 0) < value:
            raise RPCFailure("insufficient funds for gas * price + value")

        if not self.revert_execution and recipient is not None:
            self.balances[sender] = self.balances.get(sender, 0) - value
            self.balances[recipient.lower()] = self.balances.get(recipient.lower(), 0) + value

        tx_hash = "0x" + format(len(self.transactions) + 1, "064x")
        self.transactions[tx_hash] = {
            "hash": tx_hash,
            "from": sender,
            "to": recipient.lower() if recipient else None,
            "value": hex(value),
            "input": tx.get("data", "0x"),
            "gas": tx.get("gas", hex(self.gas_used)),
            "nonce": hex(len(self.transactions)),
        }
        self.receipts[tx_hash] = {
            "transactionHash": tx_hash,
            "status": "0x0" if self.revert_execution else "0x1",
            "gasUsed": hex(self.gas_used),
            "logs": [] if self.revert_execution else list(self.next_logs),
            "contractAddress": None if recipient else "0x" + "ab" * 20,
        }
        return tx_hash

    def _rpc_eth_getTransactionReceipt(self, tx_hash):
        if self.never_mine:
            return None
        return self.receipts.get(tx_hash)

    def _rpc_eth_getTransactionByHash(self, tx_hash):
        return self.transactions.get(tx_hash)

    def _rpc_trace_transaction(self, tx_hash):
        if self.flat_trace is None:
            raise RPCFailure("Method not found", code=-32601)
        return self.flat_trace

    def _rpc_debug_traceTransaction(self, tx_hash, options):
        if self.call_tree is None:
            raise RPCFailure("the method debug_traceTransaction does not exist/is not available")
        return self.call_tree

    def _rpc_eth_call(self, tx, block="latest"):
        metadata = self.token_metadata.get(tx["to"].lower())
        if metadata is None:
            raise RPCFailure("execution reverted", code=3)
        symbol, decimals = metadata
        selector = tx.get("data", tx.get("input", ""))[:10]
        if selector == SYMBOL_SELECTOR and symbol is not None:
            return "0x" + encode(["string"], [symbol]).hex()
        if selector == DECIMALS_SELECTOR and decimals is not None:
            return "0x" + encode(["uint8"], [decimals]).hex()
        raise RPCFailure("execution reverted", code=3)


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()


@pytest.fixture
def gateway(node) -> NodeGateway:
    return NodeGateway(Web3(node), metadata_retries=0)


@pytest.fixture
def simulator(gateway) -> TransactionSimulator:
    return TransactionSimulator(gateway, receipt_timeout=0.2, receipt_poll_interval=0.01)
