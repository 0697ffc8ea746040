"""Web3 contract bindings for the adapter capability interfaces.

Each binding wraps a web3 ``Contract`` and translates its
``contract.functions.X().call()`` results into the shapes the adapters
expect. :class:`ContractConnector` picks the binding for a registered source.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, ClassVar

from web3 import Web3
from web3.contract import Contract

from ..errors import InvalidConfigError
from .base import SourceType
from .round_feed import RoundData

if TYPE_CHECKING:
    from ..SourceRegistry import OracleSource

logger = logging.getLogger(__name__)


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[tuple[str, str]]) -> dict:
    """Build a minimal ABI entry for a view function."""
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


_ROUND_OUTPUTS = [
    ("roundId", "uint80"),
    ("answer", "int256"),
    ("startedAt", "uint256"),
    ("updatedAt", "uint256"),
    ("answeredInRound", "uint80"),
]

ROUND_FEED_ABI = [
    _fn("latestRoundData", [], _ROUND_OUTPUTS),
    _fn("getRoundData", [("_roundId", "uint80")], _ROUND_OUTPUTS),
]

TWAP_POOL_ABI = [
    _fn(
        "observe",
        [("secondsAgos", "uint32[]")],
        [
            ("tickCumulatives", "int56[]"),
            ("secondsPerLiquidityCumulativeX128s", "uint160[]"),
        ],
    ),
    _fn(
        "slot0",
        [],
        [
            ("sqrtPriceX96", "uint160"),
            ("tick", "int24"),
            ("observationIndex", "uint16"),
            ("observationCardinality", "uint16"),
            ("observationCardinalityNext", "uint16"),
            ("feeProtocol", "uint8"),
            ("unlocked", "bool"),
        ],
    ),
    _fn(
        "observations",
        [("index", "uint256")],
        [
            ("blockTimestamp", "uint32"),
            ("tickCumulative", "int56"),
            ("secondsPerLiquidityCumulativeX128", "uint160"),
            ("initialized", "bool"),
        ],
    ),
]

DISPUTE_STORE_ABI = [
    _fn("getNewValueCountbyQueryId", [("_queryId", "bytes32")], [("", "uint256")]),
    _fn(
        "getTimestampbyQueryIdandIndex",
        [("_queryId", "bytes32"), ("_index", "uint256")],
        [("", "uint256")],
    ),
    _fn(
        "retrieveData",
        [("_queryId", "bytes32"), ("_timestamp", "uint256")],
        [("", "bytes")],
    ),
    _fn(
        "isInDispute",
        [("_queryId", "bytes32"), ("_timestamp", "uint256")],
        [("", "bool")],
    ),
    _fn(
        "getReporterByTimestamp",
        [("_queryId", "bytes32"), ("_timestamp", "uint256")],
        [("", "address")],
    ),
]

PROXY_FEED_ABI = [
    _fn("read", [], [("value", "int224"), ("timestamp", "uint32")]),
]


class ContractBinding:
    """Base class for a capability client backed by a web3 contract.

    :cvar ABI: Minimal ABI of the functions the binding calls.
    :ivar contract: Bound web3 contract.
    """

    ABI: ClassVar[list[dict]] = []

    def __init__(self, contract: Contract) -> None:
        self.contract = contract


class ContractRoundFeed(ContractBinding):
    """Round-based aggregator contract."""

    ABI = ROUND_FEED_ABI

    def latest_round_data(self) -> RoundData:
        return tuple(self.contract.functions.latestRoundData().call())

    def get_round_data(self, round_id: int) -> RoundData:
        return tuple(self.contract.functions.getRoundData(round_id).call())


class ContractTwapPool(ContractBinding):
    """Liquidity pool with a cumulative tick oracle.

    The last-update timestamp is the block timestamp of the pool's most
    recent observation.
    """

    ABI = TWAP_POOL_ABI

    def observe(self, seconds_agos: Sequence[int]) -> list[int]:
        tick_cumulatives, _ = self.contract.functions.observe(list(seconds_agos)).call()
        return list(tick_cumulatives)

    def last_update_timestamp(self) -> int:
        observation_index = self.contract.functions.slot0().call()[2]
        return self.contract.functions.observations(observation_index).call()[0]


class ContractDisputeStore(ContractBinding):
    """Crowd-reported value store with disputes."""

    ABI = DISPUTE_STORE_ABI

    def value_count(self, query_id: bytes) -> int:
        return self.contract.functions.getNewValueCountbyQueryId(query_id).call()

    def timestamp_by_index(self, query_id: bytes, index: int) -> int:
        return self.contract.functions.getTimestampbyQueryIdandIndex(query_id, index).call()

    def retrieve(self, query_id: bytes, timestamp: int) -> bytes:
        return self.contract.functions.retrieveData(query_id, timestamp).call()

    def is_disputed(self, query_id: bytes, timestamp: int) -> bool:
        return self.contract.functions.isInDispute(query_id, timestamp).call()

    def reporter(self, query_id: bytes, timestamp: int) -> str:
        return self.contract.functions.getReporterByTimestamp(query_id, timestamp).call()


class ContractProxyFeed(ContractBinding):
    """First-party data feed proxy."""

    ABI = PROXY_FEED_ABI

    def read(self) -> tuple[int, int]:
        value, timestamp = self.contract.functions.read().call()
        return value, timestamp


CONTRACT_BINDINGS: dict[SourceType, type[ContractBinding]] = {
    SourceType.ROUND_FEED: ContractRoundFeed,
    SourceType.TWAP_FEED: ContractTwapPool,
    SourceType.DISPUTE_FEED: ContractDisputeStore,
    SourceType.PROXY_FEED: ContractProxyFeed,
}


class ContractConnector:
    """Builds contract-backed capability clients for registered sources.

    The contract address is the source's ``address`` option if set, otherwise
    its handle.

    .. code-block:: python

        w3 = Web3(Web3.HTTPProvider("https://ethereum-sepolia-rpc.publicnode.com"))
        aggregator = PriceAggregator(connector=ContractConnector(w3))

    :ivar w3: Web3 instance used for all contracts.
    """

    def __init__(self, w3: Web3) -> None:
        self.w3 = w3

    def __call__(self, source: OracleSource) -> Any:
        address = source.options.get("address", source.handle)
        if not Web3.is_address(address):
            raise InvalidConfigError(
                f"Source {source.handle!r} has no contract address to connect to"
            )

        binding = CONTRACT_BINDINGS[source.source_type]
        contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(address), abi=binding.ABI
        )
        logger.debug(f"[{source.handle}] bound {binding.__name__} at {contract.address}")
        return binding(contract)
