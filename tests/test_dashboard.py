from rich.console import Console

from txengine.dashboard import generate_dashboard
from txengine.models import PriceEntry, TransactionMetrics


def test_dashboard_renders_prices_and_landings():
    metrics = TransactionMetrics(
        "client-1", "Vault1", "Wallet1", "MintA", "MintB", "5igNaTureXYZ",
        100.0, 102.0, 0.000005, 0.3, 1.9995, 420.0, 51.0, 1.0,
    )
    layout = generate_dashboard(
        [PriceEntry("So11111111111111111111111111111111111111112", 140.0), PriceEntry("MintA", 0.25)], [metrics],
    )

    console = Console(record=True, width=160)
    console.print(layout, height=20)
    text = console.export_text()

    assert "Live Price Feed" in text
    assert "5igNaTur" in text
    assert "SESSION PnL" in text
    assert "$140.000000" in text
