# txengine/fees.py
from typing import Sequence

from .errors import FeeMintMismatch
from .models import RouteHop


def allocate_fee(amount_in: float, route: Sequence[RouteHop]) -> float:
    """
    Total fee charged across a multi-hop route, in units of amount_in.

    Each hop's fee percentage is taken from the side the fee was charged on
    and applied to the share of principal that survived the previous hops,
    so fees compound: two 1% hops cost 1.99%, not 2%.

    Raises:
        FeeMintMismatch: a hop's fee token matches neither of its legs.
    """
    remaining_pct = 100.0
    total_fee_pct = 0.0

    for hop in route:
        if hop.fee_token == hop.input_token:
            fee_pct = hop.fee_amount / hop.in_amount * 100
        elif hop.fee_token == hop.output_token:
            fee_pct = hop.fee_amount / hop.out_amount * 100
        else:
            raise FeeMintMismatch(hop)

        charged = remaining_pct * fee_pct / 100
        total_fee_pct += charged
        remaining_pct -= charged

    return amount_in * total_fee_pct / 100
