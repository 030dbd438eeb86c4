"""Tests for the Dhan broker adapter (mocked SDK). No network calls."""

import sys
from types import ModuleType
from unittest.mock import MagicMock, patch

import pytest


@pytest.fixture
def sdk() -> MagicMock:
    """Mock the dhanhq SDK module so tests run without dhanhq installed."""
    dhanhq_mod = ModuleType("dhanhq")
    client = MagicMock()
    dhanhq_mod.dhanhq = MagicMock(return_value=client)
    with patch.dict(sys.modules, {"dhanhq": dhanhq_mod}):
        yield client


def _ok(data):
    return {"status": "success", "remarks": "", "data": data}


def test_requires_credentials(sdk: MagicMock) -> None:
    from market_data.broker import DhanBroker

    with pytest.raises(ValueError, match="DHAN_CLIENT_ID"):
        DhanBroker("", "token")


def test_missing_sdk_explains_extra() -> None:
    from market_data.broker import DhanBroker

    with patch.dict(sys.modules, {"dhanhq": None}):
        with pytest.raises(ImportError, match=r"tradeloop\[broker\]"):
            DhanBroker("cid", "token")


def test_quote_unwraps_feed_envelope(sdk: MagicMock) -> None:
    from market_data.broker import DhanBroker

    sdk.quote_data.return_value = _ok({"data": {"NSE_EQ": {"1333": {"last_price": 1650.2}}}, "status": "success"})
    broker = DhanBroker("cid", "token")
    assert broker.quote({"NSE_EQ": [1333]}) == {"NSE_EQ": {"1333": {"last_price": 1650.2}}}
    sdk.quote_data.assert_called_once_with({"NSE_EQ": [1333]})


def test_intraday_passes_through_arguments(sdk: MagicMock) -> None:
    from market_data.broker import DhanBroker

    sdk.intraday_minute_data.return_value = _ok({"close": [1.0]})
    DhanBroker("cid", "token").intraday("13", "IDX_I", "INDEX", "2026-03-01", "2026-03-02", 5)
    sdk.intraday_minute_data.assert_called_once_with("13", "IDX_I", "INDEX", "2026-03-01", "2026-03-02", 5)


def test_place_bracket_maps_legs(sdk: MagicMock) -> None:
    from market_data.broker import DhanBroker

    sdk.place_order.return_value = _ok({"orderId": "9001", "orderStatus": "TRANSIT"})
    result = DhanBroker("cid", "token").place_bracket(
        {
            "security_id": "43210",
            "exchange_segment": "NSE_FNO",
            "transaction_type": "BUY",
            "quantity": 50,
            "order_type": "LIMIT",
            "price": "120.5",
            "stop_loss_value": "10",
            "profit_value": "25",
        }
    )
    assert result == {"orderId": "9001", "orderStatus": "TRANSIT"}
    kwargs = sdk.place_order.call_args.kwargs
    assert kwargs["product_type"] == "BO"
    assert kwargs["bo_profit_value"] == 25.0
    assert kwargs["bo_stop_loss_Value"] == 10.0
    assert kwargs["price"] == 120.5
    assert kwargs["quantity"] == 50


def test_failure_envelope_raises_broker_error(sdk: MagicMock) -> None:
    from market_data.broker import BrokerError, DhanBroker

    sdk.get_positions.return_value = {"status": "failure", "remarks": "Unauthorized access", "data": ""}
    with pytest.raises(BrokerError, match="positions: Unauthorized access"):
        DhanBroker("cid", "token").positions()


def test_base_url_override(sdk: MagicMock) -> None:
    from market_data.broker import DhanBroker

    DhanBroker("cid", "token", base_url="https://sandbox.example/v2/")
    assert sdk.base_url == "https://sandbox.example/v2"
