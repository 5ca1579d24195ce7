import pytest

from txengine.errors import FeeMintMismatch
from txengine.fees import allocate_fee
from txengine.models import RouteHop


def _hop(fee_token, input_token="A", output_token="B", in_amount=100, out_amount=100, fee=1):
    return RouteHop(input_token, output_token, in_amount, out_amount, fee, fee_token)


def test_fees_compound_on_remaining_principal():
    route = [_hop("A"), _hop("C", input_token="B", output_token="C")]
    assert allocate_fee(1000, route) == pytest.approx(1000 * (1 - 0.99 * 0.99))
    assert allocate_fee(1000, route) == pytest.approx(19.9)


def test_fee_on_output_side_uses_out_amount():
    route = [_hop("B", out_amount=50, fee=1)]
    assert allocate_fee(1000, route) == pytest.approx(20.0)


def test_empty_route_has_no_fee():
    assert allocate_fee(1000, []) == 0.0


def test_unknown_fee_mint_raises():
    with pytest.raises(FeeMintMismatch):
        allocate_fee(1000, [_hop("A"), _hop("Z")])
