import logging

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from txengine.models import TransactionEnvelope


@pytest.fixture
def logger():
    return logging.getLogger("txengine.tests")


@pytest.fixture
def signed_tx_bytes():
    payer = Keypair()
    ix = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Keypair().pubkey(), lamports=1_000))
    msg = MessageV0.try_compile(payer.pubkey(), [ix], [], Hash.default())
    return bytes(VersionedTransaction(msg, [payer]))


@pytest.fixture
def envelope():
    return TransactionEnvelope(payload=b"signed-tx-bytes", signature="5igNaTure")
