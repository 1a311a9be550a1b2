"""
Tests for the transfer source adapters: response parsing, normalization and address checks
"""

import base64
import hashlib
import hmac
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from services.sources import (
    EtherscanSource,
    BinanceDepositSource,
    OKXDepositSource,
    SolanaRpcSource,
    TonCenterSource,
    TronGridSource,
    build_source,
)
from services.payment_matcher import match_transfers
from services.sources.etherscan import TRANSFER_TOPIC
from utils.exceptions import InvalidInputError, SourceUnavailableError, TransferNotFoundError

TRON_ADDRESS = "TXYZopYRdj2D9XRtbG411XZZ3kM5VkAeBf"
EVM_ADDRESS = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"
SOL_ADDRESS = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
TON_ADDRESS = "EQ" + "A" * 46
SINCE = 1_700_000_000
USDT_TRC20 = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"


class TestTronGridSource:

    @pytest.mark.asyncio
    async def test_parses_trc20_rows(self):
        source = TronGridSource(endpoint="https://tron.example")
        payload = {
            "success": True,
            "data": [
                {
                    "transaction_id": "tx-1",
                    "from": "TSender",
                    "to": TRON_ADDRESS,
                    "value": "13890000",
                    "block_timestamp": (SINCE + 60) * 1000,
                    "token_info": {"symbol": "USDT", "decimals": 6, "address": USDT_TRC20},
                },
                {
                    "transaction_id": "tx-old",
                    "to": TRON_ADDRESS,
                    "value": "1000000",
                    "block_timestamp": (SINCE - 60) * 1000,
                    "token_info": {"symbol": "USDT", "decimals": 6, "address": USDT_TRC20},
                },
            ],
        }
        with patch.object(source, "_request_json", AsyncMock(return_value=payload)) as request:
            transfers = await source.get_transfers(TRON_ADDRESS, SINCE)

        assert [t.hash for t in transfers] == ["tx-1"]
        assert transfers[0].amount == Decimal("13.89")
        assert transfers[0].currency == "USDT"
        assert transfers[0].timestamp == SINCE + 60

        method, url = request.await_args.args
        assert url == f"https://tron.example/v1/accounts/{TRON_ADDRESS}/transactions/trc20"
        assert request.await_args.kwargs["params"]["min_timestamp"] == SINCE * 1000
        assert request.await_args.kwargs["params"]["only_to"] == "true"

    @pytest.mark.asyncio
    async def test_error_body_is_unavailable(self):
        source = TronGridSource(endpoint="https://tron.example")
        with patch.object(source, "_request_json", AsyncMock(return_value={"success": False, "error": "boom"})):
            with pytest.raises(SourceUnavailableError):
                await source.get_transfers(TRON_ADDRESS, SINCE)

    @pytest.mark.asyncio
    async def test_point_lookup_reads_transfer_event(self):
        source = TronGridSource(endpoint="https://tron.example")
        events = {"data": [{
            "event_name": "Transfer",
            "contract_address": USDT_TRC20,
            "block_timestamp": SINCE * 1000,
            "block_number": 123,
            "result": {"from": "TSender", "to": TRON_ADDRESS, "value": "5000000"},
        }]}
        with patch.object(source, "_request_json", AsyncMock(return_value=events)):
            transfer = await source.get_transfer("tx-9")

        assert transfer.amount == Decimal("5")
        assert transfer.currency == "USDT"
        assert transfer.block_number == 123

    @pytest.mark.asyncio
    async def test_point_lookup_not_found(self):
        source = TronGridSource(endpoint="https://tron.example")
        with patch.object(source, "_request_json", AsyncMock(return_value=None)):
            with pytest.raises(TransferNotFoundError):
                await source.get_transfer("tx-missing")

    @pytest.mark.asyncio
    async def test_unknown_token_contract_is_ignored(self):
        source = TronGridSource(endpoint="https://tron.example")
        payload = {"success": True, "data": [
            {
                "transaction_id": "tx-fake",
                "to": TRON_ADDRESS,
                "value": "13888889",
                "block_timestamp": (SINCE + 60) * 1000,
                "token_info": {"symbol": "USDT", "decimals": 6, "address": "TFakeTokenContractxxxxxxxxxxxxxxxx"},
            },
            {
                "transaction_id": "tx-no-contract",
                "to": TRON_ADDRESS,
                "value": "13888889",
                "block_timestamp": (SINCE + 60) * 1000,
                "token_info": {"symbol": "USDT", "decimals": 6},
            },
        ]}
        with patch.object(source, "_request_json", AsyncMock(return_value=payload)):
            transfers = await source.get_transfers(TRON_ADDRESS, SINCE)

        assert transfers == []
        order = SimpleNamespace(id="PAY2", pay_amount=Decimal("13.88888889"), pay_currency="USDT")
        assert match_transfers([order], transfers) == []

    @pytest.mark.asyncio
    async def test_decimals_come_from_known_contract(self):
        source = TronGridSource(endpoint="https://tron.example")
        payload = {"success": True, "data": [{
            "transaction_id": "tx-1",
            "to": TRON_ADDRESS,
            "value": "13890000",
            "block_timestamp": (SINCE + 60) * 1000,
            "token_info": {"symbol": "usdt", "decimals": 0, "address": USDT_TRC20},
        }]}
        with patch.object(source, "_request_json", AsyncMock(return_value=payload)):
            transfers = await source.get_transfers(TRON_ADDRESS, SINCE)

        assert transfers[0].amount == Decimal("13.89")
        assert transfers[0].currency == "USDT"

    @pytest.mark.parametrize("address, valid", [
        (TRON_ADDRESS, True),
        ("TXYZopYRdj2D9XRtbG411XZZ3kM5VkAeB", False),
        ("AXYZopYRdj2D9XRtbG411XZZ3kM5VkAeBf", False),
        ("TXYZopYRdj2D9XRtbG411XZZ3kM5VkAe0f", False),
    ])
    def test_validate_address(self, address, valid):
        assert TronGridSource().validate_address(address) is valid


class TestEtherscanSource:

    @pytest.mark.asyncio
    async def test_destination_compared_case_insensitively(self):
        source = EtherscanSource(chain="BSC", endpoint="https://bsc.example")
        payload = {"status": "1", "message": "OK", "result": [{
            "hash": "0xabc",
            "from": "0x1111111111111111111111111111111111111111",
            "to": EVM_ADDRESS.lower(),
            "value": "25000000000000000000",
            "tokenDecimal": "18",
            "tokenSymbol": "USDT",
            "contractAddress": "0x55d398326f99059ff775485246999027b3197955",
            "timeStamp": str(SINCE + 5),
            "blockNumber": "99",
        }]}
        with patch.object(source, "_request_json", AsyncMock(return_value=payload)) as request:
            transfers = await source.get_transfers(EVM_ADDRESS, SINCE)

        assert len(transfers) == 1
        assert transfers[0].amount == Decimal("25")
        assert transfers[0].block_number == 99
        assert request.await_args.args[1] == "https://bsc.example/api"
        assert request.await_args.kwargs["params"]["action"] == "tokentx"

    @pytest.mark.asyncio
    async def test_no_transactions_is_empty(self):
        source = EtherscanSource(endpoint="https://eth.example")
        payload = {"status": "0", "message": "No transactions found", "result": []}
        with patch.object(source, "_request_json", AsyncMock(return_value=payload)):
            assert await source.get_transfers(EVM_ADDRESS, SINCE) == []

    @pytest.mark.asyncio
    async def test_api_error_is_unavailable(self):
        source = EtherscanSource(endpoint="https://eth.example")
        payload = {"status": "0", "message": "NOTOK", "result": "Max rate limit reached"}
        with patch.object(source, "_request_json", AsyncMock(return_value=payload)):
            with pytest.raises(SourceUnavailableError):
                await source.get_transfers(EVM_ADDRESS, SINCE)

    @pytest.mark.asyncio
    async def test_point_lookup_from_receipt_logs(self):
        source = EtherscanSource(chain="ETH", endpoint="https://eth.example")
        receipt = {"result": {
            "status": "0x1",
            "blockNumber": "0x10",
            "logs": [{
                "address": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
                "topics": [
                    TRANSFER_TOPIC,
                    "0x000000000000000000000000" + "1" * 40,
                    "0x000000000000000000000000" + EVM_ADDRESS[2:].lower(),
                ],
                "data": hex(7_500_000),
            }],
        }}
        with patch.object(source, "_request_json", AsyncMock(return_value=receipt)):
            transfer = await source.get_transfer("0xhash")

        assert transfer.amount == Decimal("7.5")
        assert transfer.currency == "USDT"
        assert transfer.to_address == EVM_ADDRESS.lower()
        assert transfer.block_number == 16

    @pytest.mark.asyncio
    async def test_unknown_token_contract_is_ignored(self):
        source = EtherscanSource(chain="ETH", endpoint="https://eth.example")
        payload = {"status": "1", "message": "OK", "result": [
            {
                "hash": "0xfake",
                "to": EVM_ADDRESS.lower(),
                "value": "13888889",
                "tokenDecimal": "6",
                "tokenSymbol": "USDT",
                "contractAddress": "0x000000000000000000000000000000000000dead",
                "timeStamp": str(SINCE + 5),
            },
            {
                "hash": "0xbsc-usdt-on-eth",
                "to": EVM_ADDRESS.lower(),
                "value": "13888889",
                "tokenDecimal": "6",
                "tokenSymbol": "USDT",
                "contractAddress": "0x55d398326f99059ff775485246999027b3197955",
                "timeStamp": str(SINCE + 5),
            },
            {
                "hash": "0xreal",
                "to": EVM_ADDRESS.lower(),
                "value": "13888889",
                "tokenDecimal": "6",
                "tokenSymbol": "USDT",
                "contractAddress": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
                "timeStamp": str(SINCE + 5),
            },
        ]}
        with patch.object(source, "_request_json", AsyncMock(return_value=payload)):
            transfers = await source.get_transfers(EVM_ADDRESS, SINCE)

        assert [t.hash for t in transfers] == ["0xreal"]
        order = SimpleNamespace(id="PAY2", pay_amount=Decimal("13.88888889"), pay_currency="USDT")
        matches = match_transfers([order], transfers)
        assert [m.transfer.hash for m in matches] == ["0xreal"]

    @pytest.mark.parametrize("address, valid", [
        (EVM_ADDRESS, True),
        (EVM_ADDRESS.lower(), True),
        ("0x123", False),
        (TRON_ADDRESS, False),
    ])
    def test_validate_address(self, address, valid):
        assert EtherscanSource().validate_address(address) is valid


class TestOKXDepositSource:

    def make_source(self):
        return OKXDepositSource(api_key="key", api_secret="secret", passphrase="pass", endpoint="https://okx.example")

    def test_signature(self):
        source = self.make_source()
        expected = base64.b64encode(hmac.new(
            b"secret", b"2026-01-01T00:00:00.000ZGET/api/v5/asset/deposit-history?limit=50", hashlib.sha256
        ).digest()).decode()

        assert source.sign("2026-01-01T00:00:00.000Z", "get", "/api/v5/asset/deposit-history?limit=50") == expected

    @pytest.mark.asyncio
    async def test_only_successful_deposits(self):
        source = self.make_source()
        payload = {"code": "0", "data": [
            {"txId": "d-1", "to": "okx-deposit-address-0001", "amt": "13.89", "ccy": "USDT",
             "state": "2", "ts": str((SINCE + 1) * 1000)},
            {"txId": "d-2", "to": "okx-deposit-address-0001", "amt": "9", "ccy": "USDT",
             "state": "0", "ts": str((SINCE + 1) * 1000)},
        ]}
        with patch.object(source, "_request_json", AsyncMock(return_value=payload)) as request:
            transfers = await source.get_transfers("okx-deposit-address-0001", SINCE)

        assert [t.hash for t in transfers] == ["d-1"]
        assert transfers[0].amount == Decimal("13.89")
        headers = request.await_args.kwargs["headers"]
        assert headers["OK-ACCESS-KEY"] == "key"
        assert headers["OK-ACCESS-PASSPHRASE"] == "pass"
        assert headers["OK-ACCESS-SIGN"]

    @pytest.mark.asyncio
    async def test_error_code_is_unavailable(self):
        source = self.make_source()
        with patch.object(source, "_request_json", AsyncMock(return_value={"code": "50111", "msg": "Invalid key"})):
            with pytest.raises(SourceUnavailableError):
                await source.get_transfers("okx-deposit-address-0001", SINCE)


class TestBinanceDepositSource:

    def make_source(self):
        return BinanceDepositSource(api_key="key", api_secret="secret", endpoint="https://binance.example")

    def test_signature_is_hex_hmac_of_query(self):
        source = self.make_source()
        query = "coin=USDT&startTime=1700000000000&timestamp=1700000000123"
        expected = hmac.new(b"secret", query.encode(), hashlib.sha256).hexdigest()

        assert source.sign(query) == expected

    @pytest.mark.asyncio
    async def test_only_successful_deposits(self):
        source = self.make_source()
        payload = [
            {"txId": "b-1", "address": "binance-deposit-address-01", "amount": "13.89", "coin": "USDT",
             "status": 1, "insertTime": (SINCE + 1) * 1000},
            {"txId": "b-2", "address": "binance-deposit-address-01", "amount": "9", "coin": "USDT",
             "status": 0, "insertTime": (SINCE + 1) * 1000},
            {"txId": "b-3", "address": "someone-elses-address-0001", "amount": "9", "coin": "USDT",
             "status": 1, "insertTime": (SINCE + 1) * 1000},
        ]
        with patch.object(source, "_request_json", AsyncMock(return_value=payload)) as request:
            transfers = await source.get_transfers("binance-deposit-address-01", SINCE)

        assert [t.hash for t in transfers] == ["b-1"]
        assert transfers[0].amount == Decimal("13.89")
        assert transfers[0].currency == "USDT"
        assert transfers[0].timestamp == SINCE + 1

        url = request.await_args.args[1]
        assert url.startswith("https://binance.example/sapi/v1/capital/deposit/hisrec?")
        assert f"startTime={SINCE * 1000}" in url
        query, signature = url.split("?", 1)[1].split("&signature=")
        assert signature == source.sign(query)
        assert request.await_args.kwargs["headers"] == {"X-MBX-APIKEY": "key"}

    @pytest.mark.asyncio
    async def test_error_body_is_unavailable(self):
        source = self.make_source()
        with patch.object(source, "_request_json", AsyncMock(return_value={"code": -2014, "msg": "API-key format invalid."})):
            with pytest.raises(SourceUnavailableError):
                await source.get_transfers("binance-deposit-address-01", SINCE)

    @pytest.mark.asyncio
    async def test_point_lookup(self):
        source = self.make_source()
        payload = [{"txId": "b-1", "address": "binance-deposit-address-01", "amount": "5", "coin": "usdt",
                    "status": 1, "insertTime": SINCE * 1000}]
        with patch.object(source, "_request_json", AsyncMock(return_value=payload)):
            transfer = await source.get_transfer("b-1")
            assert transfer.amount == Decimal("5")
            with pytest.raises(TransferNotFoundError):
                await source.get_transfer("b-missing")


class TestTonCenterSource:

    @pytest.mark.asyncio
    async def test_parses_incoming_messages(self):
        source = TonCenterSource(endpoint="https://ton.example/api/v2")
        payload = {"ok": True, "result": [
            {
                "transaction_id": {"hash": "h-1", "lt": "42"},
                "utime": SINCE + 10,
                "in_msg": {"source": "EQsender", "destination": TON_ADDRESS, "value": "2500000000"},
            },
            {
                "transaction_id": {"hash": "h-ext", "lt": "43"},
                "utime": SINCE + 11,
                "in_msg": {"source": "", "destination": TON_ADDRESS, "value": "0"},
            },
        ]}
        with patch.object(source, "_request_json", AsyncMock(return_value=payload)):
            transfers = await source.get_transfers(TON_ADDRESS, SINCE)

        assert len(transfers) == 1
        assert transfers[0].hash == "h-1"
        assert transfers[0].amount == Decimal("2.5")
        assert transfers[0].currency == "TON"
        assert transfers[0].block_number == 42

    @pytest.mark.asyncio
    async def test_not_ok_is_unavailable(self):
        source = TonCenterSource(endpoint="https://ton.example/api/v2")
        with patch.object(source, "_request_json", AsyncMock(return_value={"ok": False, "error": "bad"})):
            with pytest.raises(SourceUnavailableError):
                await source.get_transfers(TON_ADDRESS, SINCE)

    @pytest.mark.parametrize("address, valid", [
        (TON_ADDRESS, True),
        ("0:" + "ab" * 32, True),
        ("EQshort", False),
    ])
    def test_validate_address(self, address, valid):
        assert TonCenterSource().validate_address(address) is valid


class TestSolanaRpcSource:

    @pytest.mark.asyncio
    async def test_spl_and_native_deltas(self):
        source = SolanaRpcSource(endpoint="https://sol.example")
        signatures = [
            {"signature": "sig-spl", "confirmationStatus": "finalized", "blockTime": SINCE + 1},
            {"signature": "sig-sol", "confirmationStatus": "finalized", "blockTime": SINCE + 2},
            {"signature": "sig-pending", "confirmationStatus": "confirmed", "blockTime": SINCE + 3},
            {"signature": "sig-failed", "confirmationStatus": "finalized", "blockTime": SINCE + 4, "err": {"x": 1}},
        ]
        transactions = {
            "sig-spl": {
                "blockTime": SINCE + 1,
                "slot": 10,
                "meta": {
                    "preTokenBalances": [],
                    "postTokenBalances": [{
                        "mint": "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
                        "owner": SOL_ADDRESS,
                        "uiTokenAmount": {"uiAmountString": "13.89"},
                    }],
                },
                "transaction": {"message": {"accountKeys": []}},
            },
            "sig-sol": {
                "blockTime": SINCE + 2,
                "slot": 11,
                "meta": {"preBalances": [5_000_000_000, 0], "postBalances": [3_500_000_000, 1_500_000_000]},
                "transaction": {"message": {"accountKeys": [{"pubkey": "SenderKey"}, {"pubkey": SOL_ADDRESS}]}},
            },
        }

        async def fake_rpc(method, params):
            if method == "getSignaturesForAddress":
                return signatures
            return transactions[params[0]]

        with patch.object(source, "_rpc", AsyncMock(side_effect=fake_rpc)) as rpc:
            transfers = await source.get_transfers(SOL_ADDRESS, SINCE)

        by_hash = {t.hash: t for t in transfers}
        assert set(by_hash) == {"sig-spl", "sig-sol"}
        assert by_hash["sig-spl"].amount == Decimal("13.89")
        assert by_hash["sig-spl"].currency == "USDT"
        assert by_hash["sig-sol"].amount == Decimal("1.5")
        assert by_hash["sig-sol"].currency == "SOL"
        assert by_hash["sig-sol"].from_address == "SenderKey"
        assert rpc.await_count == 3

    @pytest.mark.asyncio
    async def test_rpc_error_is_unavailable(self):
        source = SolanaRpcSource(endpoint="https://sol.example")
        error = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "busy"}}
        with patch.object(source, "_request_json", AsyncMock(return_value=error)):
            with pytest.raises(SourceUnavailableError):
                await source.get_transfers(SOL_ADDRESS, SINCE)

    def test_validate_address(self):
        source = SolanaRpcSource()
        assert source.validate_address(SOL_ADDRESS)
        assert not source.validate_address("0OIl" * 10)
        assert not source.validate_address("short")


class TestBuildSource:

    def config(self, **kwargs):
        values = dict(chain="TRON", source_type="trongrid", endpoint=None, api_key=None, api_secret=None, passphrase=None)
        values.update(kwargs)
        return SimpleNamespace(**values)

    def test_builds_by_type(self):
        assert isinstance(build_source(self.config()), TronGridSource)
        eth = build_source(self.config(chain="MATIC", source_type="Etherscan", api_key="k"))
        assert isinstance(eth, EtherscanSource)
        assert eth.chain == "MATIC"
        assert eth.api_key == "k"

    def test_builds_okx_with_credentials(self):
        okx = build_source(self.config(chain="OKX", source_type="okx", api_key="a", api_secret="b", passphrase="c"))
        assert isinstance(okx, OKXDepositSource)
        assert okx.passphrase == "c"

    def test_unknown_type_rejected(self):
        with pytest.raises(InvalidInputError):
            build_source(self.config(source_type="carrier_pigeon"))

    def test_builds_binance_with_credentials(self):
        binance = build_source(self.config(chain="BINANCE", source_type="binance", api_key="a", api_secret="b"))
        assert isinstance(binance, BinanceDepositSource)
        assert binance.api_secret == "b"
        assert binance.chain == "BINANCE"
