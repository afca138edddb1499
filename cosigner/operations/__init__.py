from .custody import ChainedKeyCustody, EnvKeyCustody, HttpKeyCustody, KeyCustody
from .directory import ResourceDirectory, StaticResourceDirectory
from .fee_claim import FeeClaimOperation
from .fees import FeeDistribution, FeeRecipient, FeeShare, distribute_fees, validate_recipients
from .integrity import TransactionIntegrityVerifier, bundle_hash
from .ledger import Ledger, SolanaLedgerClient
from .liquidity import LiquidityDepositOperation, LiquidityWithdrawOperation
from .pricing import JupiterPriceClient, PriceSource
from .rebalance import RebalanceResult, rebalance
from .sdk import HttpPositionSdk, PositionSdk
from .sequencer import OperationDefinition, OperationSequencer
from .types import BuildResult, BundlePlan, ConfirmResult, MintInfo, ResourceConfig

__all__ = [
    "BuildResult",
    "BundlePlan",
    "ChainedKeyCustody",
    "ConfirmResult",
    "EnvKeyCustody",
    "FeeClaimOperation",
    "FeeDistribution",
    "FeeRecipient",
    "FeeShare",
    "HttpKeyCustody",
    "HttpPositionSdk",
    "JupiterPriceClient",
    "KeyCustody",
    "Ledger",
    "LiquidityDepositOperation",
    "LiquidityWithdrawOperation",
    "MintInfo",
    "OperationDefinition",
    "OperationSequencer",
    "PriceSource",
    "RebalanceResult",
    "ResourceConfig",
    "ResourceDirectory",
    "SolanaLedgerClient",
    "StaticResourceDirectory",
    "TransactionIntegrityVerifier",
    "bundle_hash",
    "distribute_fees",
    "rebalance",
    "validate_recipients",
]
