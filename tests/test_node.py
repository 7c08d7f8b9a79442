"""
节点层单元测试：网关、快照与 Anvil 进程
"""

import subprocess

import pytest
import requests

from txsim.errors import (
    DecodeError,
    ExecutionRejected,
    GasEstimationFailed,
    NodeUnavailable,
    ReceiptTimeout,
    TracingUnsupported,
    UnsupportedMethod,
)
from txsim.node import gateway as gateway_module
from txsim.node.anvil import AnvilProcess, find_free_port
from txsim.node.gateway import RPCResponseError, to_hex, to_int
from txsim.node.snapshots import SnapshotManager
from txsim.simulation.models import SimulationRequest, SimulationStrategy
from txsim.simulation.traces import CallTree, FlatTrace

from .conftest import RECIPIENT, SENDER, TOKEN


class TestNumericNormalization:
    """测试边界上的数值转换"""

    def test_to_int(self):
        assert to_int("0x0") == 0
        assert to_int("0x5208") == 21000
        assert to_int(7) == 7
        assert to_int("0x" + "f" * 64) == 2**256 - 1

    def test_to_int_rejects_garbage(self):
        with pytest.raises(DecodeError):
            to_int(None)
        with pytest.raises(DecodeError):
            to_int("0xnothex")

    def test_to_hex(self):
        assert to_hex(0) == "0x0"
        assert to_hex(1_500_000_000_000_000_000) == "0x14d1120d7b160000"


class TestRPCResponseError:
    def test_method_not_found_code(self):
        assert RPCResponseError("trace_transaction", {"code": -32601, "message": "x"}).unsupported

    def test_message_hints(self):
        error = RPCResponseError("debug_traceTransaction", {"code": -32000, "message": "Method Not Supported"})
        assert error.unsupported
        assert not RPCResponseError("eth_call", {"code": 3, "message": "execution reverted"}).unsupported


class TestNodeGateway:
    """测试 RPC 网关"""

    def test_request_raises_on_error_object(self, gateway, node):
        node.failures["eth_blockNumber"] = {"code": -32000, "message": "boom"}

        with pytest.raises(RPCResponseError) as exc_info:
            gateway.request("eth_blockNumber")
        assert exc_info.value.message == "boom"

    def test_transport_errors_map_to_node_unavailable(self, gateway, node):
        def broken(method, params):
            raise requests.exceptions.ConnectionError("connection refused")

        node.make_request = broken

        with pytest.raises(NodeUnavailable):
            gateway.request("eth_blockNumber")

    def test_build_tx_params(self):
        request = SimulationRequest(
            tx_from=SENDER,
            tx_to=RECIPIENT,
            tx_value=1_500_000_000_000_000_000,
            gas_limit=50_000,
            gas_price=10**9,
        )

        params = gateway_module.NodeGateway.build_tx_params(request)
        without_gas = gateway_module.NodeGateway.build_tx_params(request, include_gas=False)

        assert params == {
            "from": SENDER,
            "to": RECIPIENT,
            "value": "0x14d1120d7b160000",
            "gas": hex(50_000),
            "gasPrice": hex(10**9),
        }
        assert "gas" not in without_gas and "gasPrice" not in without_gas

    def test_build_tx_params_contract_creation(self):
        request = SimulationRequest(tx_from=SENDER, tx_data="0x6080")

        params = gateway_module.NodeGateway.build_tx_params(request)

        assert "to" not in params
        assert params["data"] == "0x6080"

    def test_estimate_gas(self, gateway):
        assert gateway.estimate_gas(SimulationRequest(tx_from=SENDER, tx_to=RECIPIENT)) == 21000

    def test_estimate_gas_failure(self, gateway, node):
        node.failures["eth_estimateGas"] = {"code": 3, "message": "execution reverted"}

        with pytest.raises(GasEstimationFailed):
            gateway.estimate_gas(SimulationRequest(tx_from=SENDER, tx_to=RECIPIENT))

    def test_send_transaction_rejected(self, gateway, node):
        node.unlocked.clear()

        with pytest.raises(ExecutionRejected):
            gateway.send_transaction(SimulationRequest(tx_from=SENDER, tx_to=RECIPIENT))

    def test_impersonating_context(self, gateway, node):
        with gateway.impersonating(SENDER) as active:
            assert active
            assert SENDER.lower() in node.impersonated
        assert SENDER.lower() not in node.impersonated

    def test_impersonation_unsupported_is_not_fatal(self, gateway, node):
        node.failures["anvil_impersonateAccount"] = {"code": -32601, "message": "Method not found"}

        with gateway.impersonating(SENDER) as active:
            assert not active
        assert node.method_calls("anvil_stopImpersonatingAccount") == []

    def test_wait_for_receipt_normalizes_quantities(self, gateway):
        tx_hash = gateway.send_transaction(SimulationRequest(tx_from=SENDER, tx_to=RECIPIENT, tx_value=5))

        receipt = gateway.wait_for_receipt(tx_hash, timeout=1)
        tx = gateway.get_transaction(tx_hash)

        assert receipt["status"] == 1
        assert receipt["gasUsed"] == 21000
        assert tx["value"] == 5

    def test_wait_for_receipt_timeout(self, gateway, node):
        node.never_mine = True

        with pytest.raises(ReceiptTimeout):
            gateway.wait_for_receipt("0x" + "11" * 32, timeout=0.05, poll_interval=0.01)

    def test_get_transaction_missing(self, gateway):
        with pytest.raises(NodeUnavailable):
            gateway.get_transaction("0x" + "22" * 32)

    def test_fetch_trace_variants(self, gateway, node):
        node.flat_trace = [{"type": "call"}]
        node.call_tree = {"type": "CALL", "calls": []}

        flat = gateway.fetch_trace("0x01", SimulationStrategy.FLAT_TRACE)
        tree = gateway.fetch_trace("0x01", SimulationStrategy.CALL_TREE)

        assert isinstance(flat, FlatTrace) and flat.records == [{"type": "call"}]
        assert isinstance(tree, CallTree) and tree.root == {"type": "CALL", "calls": []}
        assert node.method_calls("debug_traceTransaction") == [["0x01", {"tracer": "callTracer"}]]

    def test_fetch_trace_unsupported(self, gateway):
        with pytest.raises(TracingUnsupported):
            gateway.fetch_trace("0x01", SimulationStrategy.FLAT_TRACE)
        with pytest.raises(TracingUnsupported):
            gateway.fetch_trace("0x01", SimulationStrategy.CALL_TREE)

    def test_read_token_metadata(self, gateway, node):
        node.token_metadata[TOKEN.lower()] = ("OPS", 18)

        assert gateway.read_token_metadata(TOKEN) == ("OPS", 18)

    def test_read_token_metadata_degrades_to_none(self, gateway):
        assert gateway.read_token_metadata(TOKEN) == (None, None)

    def test_read_token_metadata_retries_transient_errors(self, gateway, node, monkeypatch):
        monkeypatch.setattr(gateway_module, "backoff_sleep", lambda *args, **kwargs: None)
        gateway.metadata_retries = 2
        node.token_metadata[TOKEN.lower()] = ("OPS", 18)

        original = node.make_request
        failures = {"left": 2}

        def flaky(method, params):
            if method == "eth_call" and failures["left"] > 0:
                failures["left"] -= 1
                raise requests.exceptions.Timeout("read timed out")
            return original(method, params)

        node.make_request = flaky

        assert gateway.read_token_metadata(TOKEN) == ("OPS", 18)
        assert failures["left"] == 0


class TestSnapshotManager:
    """测试快照作用域"""

    def test_checkpoint_reverts_on_success(self, gateway, node):
        before = node.state()
        snapshots = SnapshotManager(gateway)

        with snapshots.checkpoint():
            gateway.send_transaction(SimulationRequest(tx_from=SENDER, tx_to=RECIPIENT, tx_value=10**18))
            assert node.state() != before

        assert node.state() == before
        assert len(node.method_calls("evm_revert")) == 1

    def test_checkpoint_reverts_on_error(self, gateway, node):
        before = node.state()
        snapshots = SnapshotManager(gateway)

        with pytest.raises(RuntimeError):
            with snapshots.checkpoint():
                gateway.send_transaction(SimulationRequest(tx_from=SENDER, tx_to=RECIPIENT, tx_value=1))
                raise RuntimeError("decode failed")

        assert node.state() == before
        assert len(node.method_calls("evm_revert")) == 1

    def test_revert_failure_does_not_mask_original_error(self, gateway, node):
        node.failures["evm_revert"] = {"code": -32000, "message": "revert failed"}
        snapshots = SnapshotManager(gateway)

        with pytest.raises(ValueError, match="original"):
            with snapshots.checkpoint():
                raise ValueError("original")

    def test_unexpected_revert_error_does_not_mask_original_error(self, gateway, node):
        """回滚时 provider 抛出任意异常，调用方仍看到原始异常"""

        def explode():
            raise RuntimeError("provider crashed")

        node.hooks["evm_revert"] = explode
        snapshots = SnapshotManager(gateway)

        with pytest.raises(ValueError, match="original"):
            with snapshots.checkpoint():
                raise ValueError("original")
        assert len(node.method_calls("evm_revert")) == 1

    def test_unsupported_snapshot(self, gateway, node):
        node.failures["evm_snapshot"] = {"code": -32601, "message": "Method not found"}
        snapshots = SnapshotManager(gateway)

        with pytest.raises(UnsupportedMethod):
            with snapshots.checkpoint():
                pass
        assert node.method_calls("evm_revert") == []

    def test_revert_unknown_handle_returns_false(self, gateway):
        assert SnapshotManager(gateway).revert("0xdead") is False


class StubbornProcess:
    """terminate 后不退出的进程"""

    pid = 4242

    def __init__(self):
        self.killed = False
        self.waits = []

    def poll(self):
        return None if not self.killed else -9

    def terminate(self):
        pass

    def kill(self):
        self.killed = True

    def wait(self, timeout=None):
        self.waits.append(timeout)
        if timeout is not None and not self.killed:
            raise subprocess.TimeoutExpired(cmd="anvil", timeout=timeout)
        return -9


class TestAnvilProcess:
    """测试 Anvil 进程管理"""

    def test_stop_reaps_killed_process(self):
        anvil = AnvilProcess(fork_url="https://eth.example")
        process = StubbornProcess()
        anvil._process = process

        anvil.stop()

        assert process.killed
        assert process.waits == [5, None]
        assert not anvil.is_running

    def test_find_free_port(self):
        port = find_free_port(20000)
        assert 20000 <= port < 20100

    def test_build_command(self):
        anvil = AnvilProcess(fork_url="https://eth.example", fork_block=19_000_000, anvil_path="/opt/anvil")

        cmd = anvil.build_command(8600)

        assert cmd[0] == "/opt/anvil"
        assert cmd[cmd.index("--fork-url") + 1] == "https://eth.example"
        assert cmd[cmd.index("--port") + 1] == "8600"
        assert cmd[cmd.index("--fork-block-number") + 1] == "19000000"

    def test_rpc_url_requires_start(self):
        anvil = AnvilProcess(fork_url="https://eth.example")

        assert not anvil.is_running
        with pytest.raises(RuntimeError):
            _ = anvil.rpc_url

    def test_missing_binary(self):
        anvil = AnvilProcess(fork_url="https://eth.example", anvil_path="/nonexistent/anvil-binary")

        with pytest.raises(FileNotFoundError):
            anvil.start()
        assert not anvil.is_running
