"""
Tests for the Electrum chain query facade, with a mocked transport.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import GENESIS_HASH, GENESIS_HEADER, GENESIS_TIME, make_tx, pubkey

from watchwallet.constants import MIN_RELAY_FEE
from watchwallet.electrum.api import BroadcastMismatchError, ElectrumApi
from watchwallet.protocol import ProtocolError
from watchwallet.wallet.address import electrum_script_hash, hash160, p2wpkh_script
from watchwallet.wallet.models import HistoryEntry

SCRIPT = p2wpkh_script(hash160(pubkey(1)))


def fake_transport(handlers):
    """Transport whose request() answers from method -> value/callable/exception."""
    calls = []

    async def request(method, *params):
        calls.append((method, *params))
        handler = handlers[method]
        result = handler(*params) if callable(handler) else handler
        if isinstance(result, Exception):
            raise result
        return result

    transport = MagicMock()
    transport.request = AsyncMock(side_effect=request)
    transport.subscribe = AsyncMock(return_value=None)
    transport.unsubscribe = AsyncMock(return_value=True)
    transport.calls = calls
    return transport


def three_transactions():
    return [make_tx([(1000 * n, SCRIPT)], spends=[(f"{n:02x}" * 32, n)]) for n in (1, 2, 3)]


class TestBalanceAndReceipts:
    @pytest.mark.asyncio
    async def test_get_balance_uses_script_hash(self):
        transport = fake_transport(
            {"blockchain.scripthash.get_balance": {"confirmed": 1500, "unconfirmed": -200}}
        )
        api = ElectrumApi(transport)

        balance = await api.get_balance(SCRIPT)
        assert balance.confirmed == 1500
        assert balance.unconfirmed == -200
        assert balance.total == 1300
        assert transport.calls == [
            ("blockchain.scripthash.get_balance", electrum_script_hash(SCRIPT))
        ]

    @pytest.mark.asyncio
    async def test_get_receipts_by_script_hash(self):
        transport = fake_transport(
            {
                "blockchain.scripthash.get_history": [
                    {"tx_hash": "aa" * 32, "height": 100},
                    {"tx_hash": "bb" * 32, "height": 0, "fee": 141},
                ]
            }
        )
        api = ElectrumApi(transport)

        receipts = await api.get_receipts("ff" * 32, is_script_hash=True)
        assert receipts == [
            HistoryEntry(tx_hash="aa" * 32, height=100),
            HistoryEntry(tx_hash="bb" * 32, height=0, fee=141),
        ]
        assert transport.calls[0] == ("blockchain.scripthash.get_history", "ff" * 32)

    @pytest.mark.asyncio
    async def test_empty_history(self):
        transport = fake_transport({"blockchain.scripthash.get_history": None})
        assert await ElectrumApi(transport).get_history(SCRIPT) == []


class TestGetHistory:
    @pytest.mark.asyncio
    async def test_unconfirmed_first_then_descending_height(self):
        tx300, tx_mempool, tx500 = three_transactions()
        raw = {tx.txid: tx.to_hex() for tx in (tx300, tx_mempool, tx500)}
        transport = fake_transport(
            {
                "blockchain.scripthash.get_history": [
                    {"tx_hash": tx300.txid, "height": 300},
                    {"tx_hash": tx_mempool.txid, "height": 0},
                    {"tx_hash": tx500.txid, "height": 500},
                ],
                "blockchain.block.header": GENESIS_HEADER,
                "blockchain.transaction.get": lambda txid: raw[txid],
            }
        )

        records = await ElectrumApi(transport).get_history(SCRIPT)

        assert [r.txid for r in records] == [tx_mempool.txid, tx500.txid, tx300.txid]
        assert [r.block_height for r in records] == [None, 500, 300]
        assert records[1].block_time == GENESIS_TIME
        assert records[1].block_hash == GENESIS_HASH
        assert records[0].block_time is None

    @pytest.mark.asyncio
    async def test_headers_fetched_once_per_height(self):
        first, second, _ = three_transactions()
        raw = {tx.txid: tx.to_hex() for tx in (first, second)}
        transport = fake_transport(
            {
                "blockchain.scripthash.get_history": [
                    {"tx_hash": first.txid, "height": 700},
                    {"tx_hash": second.txid, "height": 700},
                ],
                "blockchain.block.header": GENESIS_HEADER,
                "blockchain.transaction.get": lambda txid: raw[txid],
            }
        )

        records = await ElectrumApi(transport).get_history(SCRIPT)

        header_calls = [c for c in transport.calls if c[0] == "blockchain.block.header"]
        assert header_calls == [("blockchain.block.header", 700)]
        assert all(r.block_height == 700 for r in records)

    @pytest.mark.asyncio
    async def test_header_failure_keeps_transactions(self):
        """A failed header fetch drops block metadata but not the batch."""
        first, second, _ = three_transactions()
        raw = {tx.txid: tx.to_hex() for tx in (first, second)}
        transport = fake_transport(
            {
                "blockchain.scripthash.get_history": [
                    {"tx_hash": first.txid, "height": 10},
                    {"tx_hash": second.txid, "height": 20},
                ],
                "blockchain.block.header": ProtocolError("header unavailable"),
                "blockchain.transaction.get": lambda txid: raw[txid],
            }
        )

        records = await ElectrumApi(transport).get_history(SCRIPT)

        assert [r.txid for r in records] == [second.txid, first.txid]
        assert all(r.block_height is None for r in records)
        # Prefetch stops at the first failure
        header_calls = [c for c in transport.calls if c[0] == "blockchain.block.header"]
        assert len(header_calls) == 1

    @pytest.mark.asyncio
    async def test_transaction_failure_returns_partial(self):
        """A failed transaction fetch ends the batch with what was gathered."""
        first, second, third = three_transactions()
        raw = {first.txid: first.to_hex(), third.txid: third.to_hex()}

        def get_tx(txid):
            return raw.get(txid, ProtocolError("missing"))

        transport = fake_transport(
            {
                "blockchain.scripthash.get_history": [
                    {"tx_hash": first.txid, "height": 30},
                    {"tx_hash": second.txid, "height": 20},
                    {"tx_hash": third.txid, "height": 10},
                ],
                "blockchain.block.header": GENESIS_HEADER,
                "blockchain.transaction.get": get_tx,
            }
        )

        records = await ElectrumApi(transport).get_history(SCRIPT)
        assert [r.txid for r in records] == [first.txid]


class TestSingleFetches:
    @pytest.mark.asyncio
    async def test_get_block_header(self):
        transport = fake_transport({"blockchain.block.header": GENESIS_HEADER})
        header = await ElectrumApi(transport).get_block_header(0)
        assert header.block_hash == GENESIS_HASH

    @pytest.mark.asyncio
    async def test_get_transaction_with_height(self):
        tx = make_tx([(5000, SCRIPT)])
        transport = fake_transport(
            {
                "blockchain.transaction.get": tx.to_hex(),
                "blockchain.block.header": GENESIS_HEADER,
            }
        )
        record = await ElectrumApi(transport).get_transaction(tx.txid, 42)
        assert record.txid == tx.txid
        assert record.block_height == 42
        assert record.block_time == GENESIS_TIME

    @pytest.mark.asyncio
    async def test_get_transaction_unconfirmed_skips_header(self):
        tx = make_tx([(5000, SCRIPT)])
        transport = fake_transport({"blockchain.transaction.get": tx.to_hex()})
        record = await ElectrumApi(transport).get_transaction(tx.txid, 0)
        assert record.block_height is None
        assert [c[0] for c in transport.calls] == ["blockchain.transaction.get"]


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_success(self):
        tx = make_tx([(5000, SCRIPT)])
        transport = fake_transport({"blockchain.transaction.broadcast": tx.txid})
        record = await ElectrumApi(transport).broadcast_transaction(tx.to_hex())
        assert record.txid == tx.txid

    @pytest.mark.asyncio
    async def test_mismatch_carries_node_answer(self):
        tx = make_tx([(5000, SCRIPT)])
        answer = "the transaction was rejected by network rules"
        transport = fake_transport({"blockchain.transaction.broadcast": answer})

        with pytest.raises(BroadcastMismatchError) as exc_info:
            await ElectrumApi(transport).broadcast_transaction(tx.to_hex())
        assert str(exc_info.value) == answer
        assert exc_info.value.returned == answer
        assert exc_info.value.expected == tx.txid


class TestFeeEstimate:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "btc_per_kb,expected",
        [
            (0.0001, 10),
            (0.00002, 2),
            (0.00001, 1),
            (0.00002345, 3),
            (0.000001, 1),
            (-1, MIN_RELAY_FEE),
            (None, MIN_RELAY_FEE),
        ],
    )
    async def test_conversion(self, btc_per_kb, expected):
        transport = fake_transport({"blockchain.estimatefee": btc_per_kb})
        assert await ElectrumApi(transport).get_fee_estimate(2) == expected
        assert transport.calls == [("blockchain.estimatefee", 2)]


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_status_push_refetches_full_history(self):
        transport = fake_transport(
            {"blockchain.scripthash.get_history": [{"tx_hash": "aa" * 32, "height": 5}]}
        )
        api = ElectrumApi(transport)
        received = []

        await api.subscribe_status(SCRIPT, received.append)
        method, callback, script_hash = transport.subscribe.call_args.args
        assert method == "blockchain.scripthash"
        assert script_hash == electrum_script_hash(SCRIPT)

        await callback([script_hash, "new-status"])
        assert received == [[HistoryEntry(tx_hash="aa" * 32, height=5)]]
        assert transport.calls == [("blockchain.scripthash.get_history", script_hash)]

    @pytest.mark.asyncio
    async def test_async_status_callback_is_awaited(self):
        transport = fake_transport({"blockchain.scripthash.get_history": []})
        api = ElectrumApi(transport)
        callback_mock = AsyncMock()

        await api.subscribe_status(SCRIPT, callback_mock)
        _, callback, script_hash = transport.subscribe.call_args.args
        await callback([script_hash, None])
        callback_mock.assert_awaited_once_with([])

    @pytest.mark.asyncio
    async def test_unsubscribe_status(self):
        transport = fake_transport({})
        await ElectrumApi(transport).unsubscribe_status(SCRIPT)
        transport.unsubscribe.assert_awaited_once_with(
            "blockchain.scripthash", electrum_script_hash(SCRIPT)
        )

    @pytest.mark.asyncio
    async def test_header_push_yields_decoded_header(self):
        transport = fake_transport({"blockchain.block.header": GENESIS_HEADER})
        api = ElectrumApi(transport)
        received = []

        await api.subscribe_headers(received.append)
        method, callback = transport.subscribe.call_args.args
        assert method == "blockchain.headers"

        await callback([{"height": 812345, "hex": GENESIS_HEADER}])
        assert received[0].height == 812345
        assert received[0].block_hash == GENESIS_HASH
        assert transport.calls == [("blockchain.block.header", 812345)]
