import csv
import logging

import pytest

from txengine.logger import MetricsAuditLogger, setup_console_logger
from txengine.models import TransactionMetrics


def _metrics(signature):
    return TransactionMetrics(
        client="client-1",
        vault_pubkey="Vault1",
        trade_pubkey="Wallet1",
        base_mint="MintA",
        quote_mint="MintB",
        signature=signature,
        amount_in=100.0,
        amount_out=102.0,
        txn_fee=0.000005,
        swap_fee=0.3,
        transaction_pnl=1.9995,
        transaction_landing_time=420.0,
        base_token_price=51.0,
        quote_token_price=1.0,
    )


def _read_rows(path):
    with open(path, newline="") as f:
        return list(csv.reader(f))


@pytest.mark.asyncio
async def test_metrics_are_appended_after_header(tmp_path, logger):
    path = tmp_path / "logs" / "metrics.csv"
    audit = MetricsAuditLogger(str(path), logger)

    await audit.start()
    await audit.store(_metrics("sig-1"))
    await audit.store(_metrics("sig-2"))
    await audit.flush()
    await audit.shutdown()

    rows = _read_rows(path)
    assert rows[0] == list(TransactionMetrics.HEADER)
    assert [row[5] for row in rows[1:]] == ["sig-1", "sig-2"]
    assert float(rows[1][9]) == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_restart_keeps_single_header(tmp_path, logger):
    path = tmp_path / "metrics.csv"

    for signature in ("sig-1", "sig-2"):
        audit = MetricsAuditLogger(str(path), logger)
        await audit.start()
        await audit.store(_metrics(signature))
        await audit.flush()
        await audit.shutdown()

    rows = _read_rows(path)
    assert len(rows) == 3
    assert rows.count(list(TransactionMetrics.HEADER)) == 1


def test_console_logger_writes_log_file(tmp_path):
    logfile = tmp_path / "logs" / "combined.log"
    log = setup_console_logger("txengine.tests.file", "INFO", str(logfile))

    log.info("🚀 engine started")
    for handler in log.handlers:
        handler.flush()

    assert log.level == logging.INFO
    assert "engine started" in logfile.read_text(encoding="utf-8")
