# txengine/dashboard.py
from typing import Iterable

from rich.layout import Layout
from rich.panel import Panel
from rich.table import Table

from .models import PriceEntry, TransactionMetrics


def generate_dashboard(prices: Iterable[PriceEntry], recent: Iterable[TransactionMetrics]) -> Layout:
    """
    Creates the Rich Console Dashboard layout.
    Shows the live price feed, the latest landed swaps and their running PnL.
    """

    # 1. Price Table
    price_table = Table(title="📡 Live Price Feed")
    price_table.add_column("Mint", style="cyan")
    price_table.add_column("Price (USD)", justify="right", style="green")

    for entry in sorted(prices, key=lambda e: e.token_id):
        mint = entry.token_id
        price_table.add_row(f"{mint[:4]}…{mint[-4:]}", f"${entry.price:,.6f}")

    # 2. Landed swaps
    tx_table = Table(title="🚀 Recent Landings")
    tx_table.add_column("Signature", style="magenta")
    tx_table.add_column("In (USD)", justify="right")
    tx_table.add_column("Out (USD)", justify="right")
    tx_table.add_column("PnL", justify="right")
    tx_table.add_column("Land (ms)", justify="right")

    total_pnl = 0.0
    for m in recent:
        total_pnl += m.transaction_pnl
        pnl_style = "green" if m.transaction_pnl >= 0 else "red"
        tx_table.add_row(
            f"{m.signature[:8]}…",
            f"${m.amount_in:,.2f}",
            f"${m.amount_out:,.2f}",
            f"[{pnl_style}]{m.transaction_pnl:+,.4f}[/{pnl_style}]",
            f"{m.transaction_landing_time:,.0f}",
        )

    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="bottom")
    )

    layout["top"].split_row(
        Layout(Panel(price_table)),
        Layout(Panel(tx_table))
    )

    footer = Panel(f"[bold gold1]SESSION PnL: ${total_pnl:,.4f}[/bold gold1]", style="white on blue")
    layout["bottom"].update(footer)
    layout["bottom"].size = 3

    return layout
