"""
watchwallet - Watch-only HD wallet synchronization over the Electrum protocol

Provides the Electrum transport, typed chain queries, gap-limit address
discovery, a UTXO ledger and a coin selector / transaction builder.
"""

__version__ = "0.1.0"

from watchwallet.config import Settings, WalletConfig, get_settings
from watchwallet.electrum.api import BroadcastMismatchError, ElectrumApi
from watchwallet.electrum.transport import ElectrumTransport, TransportClosedError
from watchwallet.models import NetworkType, ScriptType
from watchwallet.network import NetworkConnectionError
from watchwallet.protocol import ProtocolError
from watchwallet.wallet.coin_selection import InsufficientFundsError, select_outputs
from watchwallet.wallet.discovery import AddressDiscovery, AddressInfo, Chain
from watchwallet.wallet.ledger import TransactionLedger
from watchwallet.wallet.service import WalletService
from watchwallet.wallet.tx_builder import (
    DerivationLookupError,
    UnsignedTransaction,
    make_transaction,
)

__all__ = [
    "AddressDiscovery",
    "AddressInfo",
    "BroadcastMismatchError",
    "Chain",
    "DerivationLookupError",
    "ElectrumApi",
    "ElectrumTransport",
    "InsufficientFundsError",
    "NetworkConnectionError",
    "NetworkType",
    "ProtocolError",
    "ScriptType",
    "Settings",
    "TransactionLedger",
    "TransportClosedError",
    "UnsignedTransaction",
    "WalletConfig",
    "WalletService",
    "get_settings",
    "make_transaction",
    "select_outputs",
]
