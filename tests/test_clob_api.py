"""
Tests for ClobApiClient: credential bootstrap, book params, order posting.

The SDK client is replaced with MagicMock; nothing here touches the network.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from polycopy.core.errors import CredentialError
from polycopy.trading.clob_api import SIG_EOA, SIG_GNOSIS_SAFE, ClobApiClient

KEY = "0x" + "4" * 64
PROXY = "0x" + "3" * 40
CREDS = {"api_key": "k", "api_secret": "s", "api_passphrase": "p"}


@pytest.fixture
def sdk():
    """Patch ClobClient; yields (class_mock, level1, level2)."""
    l1, l2 = MagicMock(name="level1"), MagicMock(name="level2")
    with patch("polycopy.trading.clob_api.ClobClient", side_effect=[l1, l2]) as cls, \
            patch.object(ClobApiClient, "_patch_sdk_timeout"):
        yield cls, l1, l2


async def _ready(sdk, funder: str = PROXY) -> ClobApiClient:
    _, l1, _ = sdk
    l1.derive_api_key.return_value = CREDS
    client = ClobApiClient(private_key=KEY, host="https://clob.test", funder=funder, timeout=1)
    await client.initialize()
    return client


class TestInitialize:

    @pytest.mark.asyncio
    async def test_derived_creds_build_level2_client(self, sdk):
        cls, l1, _ = sdk
        client = await _ready(sdk)

        assert client.is_ready
        l1.create_api_key.assert_not_called()
        level1_kwargs = cls.call_args_list[0].kwargs
        assert "funder" not in level1_kwargs
        level2_kwargs = cls.call_args_list[1].kwargs
        assert level2_kwargs["creds"] == CREDS
        assert level2_kwargs["signature_type"] == SIG_GNOSIS_SAFE
        assert level2_kwargs["funder"] == PROXY

    @pytest.mark.asyncio
    async def test_falls_back_to_create(self, sdk):
        cls, l1, _ = sdk
        l1.derive_api_key.side_effect = RuntimeError("no key yet")
        l1.create_api_key.return_value = CREDS
        client = ClobApiClient(private_key=KEY, host="https://clob.test", timeout=1)

        assert await client.initialize() is True
        assert client.signature_type == SIG_EOA
        assert cls.call_args_list[1].kwargs["signature_type"] == SIG_EOA

    @pytest.mark.asyncio
    async def test_both_paths_failing_raises(self, sdk):
        _, l1, _ = sdk
        l1.derive_api_key.side_effect = RuntimeError("400")
        l1.create_api_key.side_effect = RuntimeError("400")
        client = ClobApiClient(private_key=KEY, host="https://clob.test", timeout=1)

        with pytest.raises(CredentialError):
            await client.initialize()
        assert not client.is_ready

    @pytest.mark.asyncio
    async def test_bad_key_raises(self):
        with patch("polycopy.trading.clob_api.ClobClient", side_effect=ValueError("bad key")), \
                patch.object(ClobApiClient, "_patch_sdk_timeout"):
            client = ClobApiClient(private_key="nope", host="https://clob.test")
            with pytest.raises(CredentialError, match="invalid signer key"):
                await client.initialize()


class TestBookParams:

    @pytest.mark.asyncio
    async def test_reads_book(self, sdk):
        _, _, l2 = sdk
        l2.get_order_book.return_value = {"tick_size": "0.001", "neg_risk": True}
        client = await _ready(sdk)

        params = await client.get_book_params("1001")

        assert params.tick_size == "0.001"
        assert params.neg_risk is True
        assert params.from_book is True

    @pytest.mark.asyncio
    async def test_book_error_uses_defaults(self, sdk):
        _, _, l2 = sdk
        l2.get_order_book.side_effect = RuntimeError("404")
        client = await _ready(sdk)

        params = await client.get_book_params("1001")

        assert (params.tick_size, params.neg_risk, params.from_book) == ("0.01", False, False)

    @pytest.mark.asyncio
    async def test_not_initialized_uses_defaults(self):
        client = ClobApiClient(private_key=KEY, host="https://clob.test")
        params = await client.get_book_params("1001")
        assert params.tick_size == "0.01"


class TestPlaceOrder:

    @pytest.mark.asyncio
    async def test_accepted(self, sdk):
        _, _, l2 = sdk
        l2.create_order.return_value = "signed"
        l2.post_order.return_value = {"success": True, "orderID": "0xorder"}
        client = await _ready(sdk)

        result = await client.place_order("1001", 0.54, 27.0, "BUY", tick_size="0.01")

        assert result.success
        assert result.order_id == "0xorder"
        order_args, options = l2.create_order.call_args.args
        assert order_args.token_id == "1001"
        assert order_args.size == 27.0
        assert options.tick_size == "0.01"

    @pytest.mark.asyncio
    async def test_error_message_is_failure(self, sdk):
        _, _, l2 = sdk
        l2.post_order.return_value = {"success": False, "errorMsg": "not enough balance / allowance"}
        client = await _ready(sdk)

        result = await client.place_order("1001", 0.54, 27.0, "BUY")

        assert not result.success
        assert result.error == "not enough balance / allowance"

    @pytest.mark.asyncio
    async def test_sdk_exception_is_failure_without_retry(self, sdk):
        _, _, l2 = sdk
        l2.post_order.side_effect = RuntimeError("connection reset")
        client = await _ready(sdk)

        result = await client.place_order("1001", 0.54, 27.0, "BUY")

        assert not result.success
        assert l2.post_order.call_count == 1

    @pytest.mark.asyncio
    async def test_unexpected_response_type(self, sdk):
        _, _, l2 = sdk
        l2.post_order.return_value = "ok"
        client = await _ready(sdk)

        result = await client.place_order("1001", 0.54, 27.0, "BUY")

        assert not result.success

    @pytest.mark.asyncio
    async def test_not_initialized(self):
        client = ClobApiClient(private_key=KEY, host="https://clob.test")
        result = await client.place_order("1001", 0.5, 10.0, "BUY")
        assert not result.success
        assert result.error == "CLOB client not initialized"
