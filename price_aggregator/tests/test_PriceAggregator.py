"""Unit tests for the PriceAggregator façade."""

import asyncio
import logging
import time

import pytest

from price_aggregator.src.PriceAggregator import AggregatorConfig, PriceAggregator, SourcePrice
from price_aggregator.src.adapters import SourceType, tick_to_price
from price_aggregator.src.auth import SingleAdminPolicy
from price_aggregator.src.combine import AggregateResult
from price_aggregator.src.errors import (
    AssetPairInactiveError,
    InsufficientResponsesError,
    InvalidConfigError,
    NotFoundError,
    UnauthorizedError,
)
from price_aggregator.tests.fakes import (
    BrokenClient,
    FakeConnector,
    FakeDisputeStore,
    FakeProxyFeed,
    FakeRoundFeed,
    FakeTwapPool,
)

ADMIN = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
E18 = 10**18


def build(connector: FakeConnector, **config: object) -> PriceAggregator:
    """Aggregator over the reference sources: 3100 (8 dec, w=2), 2900 and 3000 (18 dec)."""
    aggregator = PriceAggregator(connector, config=AggregatorConfig(**config))
    aggregator.add_source("feed-a", "round_feed", weight=2, decimals=8, description="A")
    aggregator.add_source("feed-b", "proxy_feed", weight=1, decimals=18, description="B")
    aggregator.add_source("feed-c", "proxy_feed", weight=1, decimals=18, description="C")
    aggregator.add_asset_pair("ETH/USD", "ETH", "USD", ["feed-a", "feed-b", "feed-c"])
    return aggregator


@pytest.fixture
def clients(now: int) -> dict:
    return {
        "feed-a": FakeRoundFeed.with_answer(3100_00000000, now - 10),
        "feed-b": FakeProxyFeed(2900 * E18, now - 10),
        "feed-c": FakeProxyFeed(3000 * E18, now - 10),
    }


@pytest.fixture
def aggregator(clients: dict) -> PriceAggregator:
    return build(FakeConnector(clients))


class TestAggregatorConfig:
    """Test engine option validation."""

    def test_defaults(self) -> None:
        """Defaults should be 1 response, 18 decimals, 3600s heartbeat."""
        config = AggregatorConfig()
        assert config.minimum_responses == 1
        assert config.canonical_decimals == 18
        assert config.default_heartbeat_seconds == 3600
        assert config.fetch_timeout is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"minimum_responses": 0},
            {"canonical_decimals": -1},
            {"default_heartbeat_seconds": 0},
            {"fetch_timeout": 0},
        ],
    )
    def test_invalid(self, kwargs: dict) -> None:
        """Non-positive options should be rejected."""
        with pytest.raises(InvalidConfigError):
            AggregatorConfig(**kwargs)


class TestPriceAggregatorQueries:
    """Test the reference aggregation scenario."""

    @pytest.mark.asyncio
    async def test_median(self, aggregator: PriceAggregator) -> None:
        """The median should be 3000 in canonical units."""
        assert await aggregator.get_median_price("ETH/USD") == 3000 * E18

    @pytest.mark.asyncio
    async def test_weighted(self, aggregator: PriceAggregator) -> None:
        """The weighted mean should be 3025 in canonical units."""
        assert await aggregator.get_weighted_price("ETH/USD") == 3025 * E18

    @pytest.mark.asyncio
    async def test_aggregated_shares_one_read(self, aggregator: PriceAggregator, clients: dict) -> None:
        """Both statistics should come from a single read of each source."""
        result = await aggregator.get_aggregated_price("ETH/USD")

        assert result == AggregateResult(
            median=3000 * E18,
            weighted_mean=3025 * E18,
            valid_count=3,
            sources=("feed-a", "feed-b", "feed-c"),
        )
        assert clients["feed-b"].reads == 1
        assert clients["feed-c"].reads == 1

    @pytest.mark.asyncio
    async def test_other_canonical_precision(self, clients: dict) -> None:
        """Results should follow the configured canonical precision."""
        aggregator = build(FakeConnector(clients), canonical_decimals=8)
        assert await aggregator.get_median_price("ETH/USD") == 3000_00000000

    @pytest.mark.asyncio
    async def test_no_caching(self, aggregator: PriceAggregator, clients: dict) -> None:
        """Every query should read the sources again."""
        await aggregator.get_median_price("ETH/USD")
        clients["feed-c"].value = 3050 * E18
        assert await aggregator.get_median_price("ETH/USD") == 3050 * E18


class TestPriceAggregatorExclusion:
    """Test per-source failure handling."""

    @pytest.mark.asyncio
    async def test_stale_round_feed_excluded(self, clients: dict, now: int) -> None:
        """A stale source should be excluded while the others remain valid."""
        clients["feed-a"] = FakeRoundFeed.with_answer(3100_00000000, now - 7200)
        aggregator = build(FakeConnector(clients))

        result = await aggregator.get_aggregated_price("ETH/USD")
        assert result.median == 2950 * E18
        assert result.weighted_mean == 2950 * E18
        assert result.sources == ("feed-b", "feed-c")

    @pytest.mark.asyncio
    async def test_exclusion_is_logged(
        self, clients: dict, now: int, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Excluded sources should be logged as warnings."""
        clients["feed-a"] = FakeRoundFeed.with_answer(3100_00000000, now - 7200)
        aggregator = build(FakeConnector(clients))

        with caplog.at_level(logging.WARNING):
            await aggregator.get_median_price("ETH/USD")
        assert "[feed-a] Excluded: Data is stale" in caplog.text

    @pytest.mark.asyncio
    async def test_minimum_responses(self, clients: dict, now: int) -> None:
        """Too few valid sources should fail the query."""
        clients["feed-b"] = FakeProxyFeed(2900 * E18, 0)
        clients["feed-c"] = FakeProxyFeed(-1, now)
        aggregator = build(FakeConnector(clients), minimum_responses=2)

        with pytest.raises(InsufficientResponsesError, match="1 available, 2 required") as exc:
            await aggregator.get_median_price("ETH/USD")
        assert exc.value.available == 1
        assert exc.value.required == 2

    @pytest.mark.asyncio
    async def test_all_sources_fail(self, now: int) -> None:
        """No valid sources should fail even with the default minimum."""
        connector = FakeConnector(
            {
                "feed-a": BrokenClient(),
                "feed-b": FakeProxyFeed(1, 0),
                "feed-c": FakeProxyFeed(1, now - 7200),
            }
        )
        with pytest.raises(InsufficientResponsesError):
            await build(connector).get_weighted_price("ETH/USD")

    @pytest.mark.asyncio
    async def test_client_error_excluded(self, clients: dict) -> None:
        """Unexpected client errors should exclude only that source."""
        clients["feed-a"] = BrokenClient()
        aggregator = build(FakeConnector(clients))
        assert await aggregator.get_median_price("ETH/USD") == 2950 * E18

    @pytest.mark.asyncio
    async def test_timeout_excluded(self, clients: dict, now: int) -> None:
        """A source slower than the fetch timeout should be excluded."""
        clients["feed-c"] = FakeProxyFeed(3000 * E18, now, delay=0.5)
        aggregator = build(FakeConnector(clients), fetch_timeout=0.05)

        rows = await aggregator.get_all_prices_with_status("ETH/USD")
        slow = rows[2]
        assert slow.price == 0
        assert slow.error == "TimeoutError"
        assert await aggregator.get_median_price("ETH/USD") == 3000 * E18

    @pytest.mark.asyncio
    async def test_per_source_heartbeat(self, clients: dict, now: int) -> None:
        """A source's own heartbeat should override the default."""
        clients["feed-d"] = FakeProxyFeed(9000 * E18, now - 120)
        aggregator = build(FakeConnector(clients))
        aggregator.add_source("feed-d", "proxy_feed", weight=1, decimals=18, heartbeat_seconds=60)
        aggregator.add_asset_pair("ETH/EUR", "ETH", "EUR", ["feed-b", "feed-d"])

        assert await aggregator.get_median_price("ETH/EUR") == 2900 * E18

    @pytest.mark.asyncio
    async def test_twap_source_has_no_freshness_check(self, clients: dict, now: int) -> None:
        """TWAP readings should count regardless of their age."""
        clients["pool"] = FakeTwapPool(tick=0, timestamp=now - 100_000)
        aggregator = build(FakeConnector(clients))
        aggregator.add_source(
            "pool", "twap_feed", weight=1, decimals=18, options={"window_seconds": 600}
        )
        aggregator.add_asset_pair("POOL", "A", "B", ["pool"])

        assert await aggregator.get_median_price("POOL") == tick_to_price(0, 18)

    @pytest.mark.asyncio
    async def test_removed_source_skipped(self, aggregator: PriceAggregator) -> None:
        """Sources removed after pair creation should be skipped."""
        aggregator.remove_source("feed-a")

        assert await aggregator.get_median_price("ETH/USD") == 2950 * E18
        rows = await aggregator.get_all_prices("ETH/USD")
        assert rows[0] == SourcePrice(
            handle="feed-a",
            price=0,
            source_type=None,
            description="",
            timestamp=0,
            error="Source is no longer registered",
        )


class TestPriceAggregatorPairs:
    """Test pair resolution."""

    @pytest.mark.asyncio
    async def test_unknown_pair(self, aggregator: PriceAggregator) -> None:
        """Unknown pairs should fail as inactive and not found."""
        with pytest.raises(AssetPairInactiveError) as exc:
            await aggregator.get_median_price("BTC/USD")
        assert isinstance(exc.value, NotFoundError)

    @pytest.mark.asyncio
    async def test_inactive_pair(self, aggregator: PriceAggregator, clients: dict) -> None:
        """Inactive pairs should fail without reading any source."""
        aggregator.set_asset_pair_active("ETH/USD", False)

        with pytest.raises(AssetPairInactiveError, match="not active"):
            await aggregator.get_weighted_price("ETH/USD")
        with pytest.raises(AssetPairInactiveError):
            await aggregator.get_all_prices("ETH/USD")
        assert clients["feed-b"].reads == 0


class TestPriceAggregatorDiagnostics:
    """Test the unfiltered views and diagnostic operations."""

    @pytest.mark.asyncio
    async def test_all_prices(self, clients: dict, now: int) -> None:
        """Every source should be listed, failed ones with price 0."""
        clients["feed-c"] = FakeProxyFeed(3000 * E18, 0)
        aggregator = build(FakeConnector(clients))

        rows = await aggregator.get_all_prices("ETH/USD")

        assert [r.handle for r in rows] == ["feed-a", "feed-b", "feed-c"]
        assert rows[0].price == 3100 * E18
        assert rows[0].source_type is SourceType.ROUND_FEED
        assert rows[0].description == "A"
        assert rows[0].timestamp == now - 10
        assert rows[0].valid
        assert rows[2].price == 0
        assert rows[2].timestamp == 0
        assert not rows[2].valid

    @pytest.mark.asyncio
    async def test_all_prices_with_status(self, clients: dict, now: int) -> None:
        """Dispute-capable sources should report their dispute flag."""
        clients["tellor"] = FakeDisputeStore([(now - 10, 3000 * E18, True, "0xmallory")])
        aggregator = build(FakeConnector(clients))
        aggregator.add_source(
            "tellor",
            "dispute_feed",
            weight=1,
            decimals=18,
            options={"asset": "eth", "currency": "usd"},
        )
        aggregator.add_asset_pair("ETH/USD2", "ETH", "USD", ["feed-b", "tellor"])

        plain = await aggregator.get_all_prices("ETH/USD2")
        status = await aggregator.get_all_prices_with_status("ETH/USD2")

        assert not plain[1].disputed
        assert status[1].disputed
        assert status[1].price == 0
        assert not status[0].disputed
        assert await aggregator.get_median_price("ETH/USD2") == 2900 * E18

    @pytest.mark.asyncio
    async def test_check_disputes(self, clients: dict, now: int) -> None:
        """Only dispute feeds with a disputed latest value should be reported."""
        clients["tellor-1"] = FakeDisputeStore([(now, E18, True, "0xmallory")])
        clients["tellor-2"] = FakeDisputeStore([(now, E18, False, "0xalice")])
        clients["tellor-3"] = BrokenClient()
        aggregator = build(FakeConnector(clients))
        for handle in ("tellor-1", "tellor-2", "tellor-3"):
            aggregator.add_source(
                handle, "tellor", weight=1, decimals=18, options={"asset": "eth", "currency": "usd"}
            )
        aggregator.add_asset_pair(
            "ETH/USD2", "ETH", "USD", ["feed-a", "tellor-1", "tellor-2", "tellor-3"]
        )

        check = await aggregator.check_disputes("ETH/USD2")
        assert check.has_disputed
        assert check.disputed_sources == ("tellor-1",)

        clean = await aggregator.check_disputes("ETH/USD")
        assert not clean.has_disputed
        assert clean.disputed_sources == ()

    @pytest.mark.asyncio
    async def test_dispute_analytics(self, clients: dict, now: int) -> None:
        """Analytics should be served for dispute feeds only."""
        clients["tellor"] = FakeDisputeStore([(now - 5, E18, False, "0xalice")])
        aggregator = build(FakeConnector(clients))
        aggregator.add_source(
            "tellor", "tellor", weight=1, decimals=18, options={"asset": "eth", "currency": "usd"}
        )

        analytics = await aggregator.get_dispute_analytics("tellor")
        assert analytics.value_count == 1
        assert analytics.last_reporter == "0xalice"

        with pytest.raises(InvalidConfigError, match="not a dispute feed"):
            await aggregator.get_dispute_analytics("feed-a")

    @pytest.mark.asyncio
    async def test_fetch_price_from_source(self, aggregator: PriceAggregator, now: int) -> None:
        """A single source should be read and normalized."""
        row = await aggregator.fetch_price_from_source("feed-a")
        assert row.price == 3100 * E18
        assert row.timestamp == now - 10

        with pytest.raises(NotFoundError):
            await aggregator.fetch_price_from_source("feed-x")

    @pytest.mark.asyncio
    async def test_adapter_for_history(self, clients: dict, now: int) -> None:
        """Adapters should be available for historical queries."""
        clients["feed-a"].add_round(2, 3200_00000000, now)
        aggregator = build(FakeConnector(clients))

        readings = await aggregator.adapter_for("feed-a").recent_values(2)
        assert [r.raw_value for r in readings] == [3200_00000000, 3100_00000000]

    def test_registry_reads(self, aggregator: PriceAggregator) -> None:
        """Registry reads should be exposed on the façade."""
        assert [s.handle for s in aggregator.get_sources()] == ["feed-a", "feed-b", "feed-c"]
        assert aggregator.get_source_index("feed-c") == 2
        assert aggregator.get_asset_pair_sources("ETH/USD") == ("feed-a", "feed-b", "feed-c")
        assert aggregator.get_supported_pairs_count() == 1


class TestPriceAggregatorAdministration:
    """Test administrative operations."""

    @pytest.mark.asyncio
    async def test_update_source_weight(self, aggregator: PriceAggregator) -> None:
        """Weight changes should affect the weighted mean."""
        aggregator.update_source_weight("feed-a", 1)
        assert await aggregator.get_weighted_price("ETH/USD") == 3000 * E18

    @pytest.mark.asyncio
    async def test_set_minimum_responses(self, aggregator: PriceAggregator) -> None:
        """Raising the minimum above the source count should fail queries."""
        aggregator.set_minimum_responses(4)
        with pytest.raises(InsufficientResponsesError):
            await aggregator.get_median_price("ETH/USD")

        with pytest.raises(InvalidConfigError):
            aggregator.set_minimum_responses(0)
        assert aggregator.config.minimum_responses == 4

    @pytest.mark.asyncio
    async def test_set_staleness_threshold(self, clients: dict, now: int) -> None:
        """The default heartbeat should decide staleness of sources without one."""
        clients["feed-a"] = FakeRoundFeed.with_answer(3100_00000000, now - 7200)
        aggregator = build(FakeConnector(clients))
        assert await aggregator.get_median_price("ETH/USD") == 2950 * E18

        aggregator.set_staleness_threshold(10_000)
        assert await aggregator.get_median_price("ETH/USD") == 3000 * E18

    def test_admin_gating(self, clients: dict) -> None:
        """Every administrative operation should require the administrator."""
        aggregator = PriceAggregator(FakeConnector(clients), policy=SingleAdminPolicy(ADMIN))
        aggregator.add_source("feed-a", "round_feed", weight=1, decimals=8, caller=ADMIN)
        aggregator.add_asset_pair("ETH/USD", "ETH", "USD", ["feed-a"], caller=ADMIN)

        operations = [
            lambda: aggregator.add_source("feed-b", "proxy_feed", 1, 18, caller="mallory"),
            lambda: aggregator.remove_source("feed-a", caller="mallory"),
            lambda: aggregator.update_source_weight("feed-a", 2, caller="mallory"),
            lambda: aggregator.add_asset_pair("X/Y", "X", "Y", ["feed-a"], caller="mallory"),
            lambda: aggregator.set_asset_pair_active("ETH/USD", False, caller="mallory"),
            lambda: aggregator.set_minimum_responses(2, caller="mallory"),
            lambda: aggregator.set_staleness_threshold(60, caller="mallory"),
        ]
        for operation in operations:
            with pytest.raises(UnauthorizedError):
                operation()

        assert len(aggregator.sources) == 1
        assert aggregator.config == AggregatorConfig()
        assert aggregator.pairs.is_active("ETH/USD")

    def test_unauthorized_before_parsing(self, clients: dict) -> None:
        """A rejected caller should not learn that the type tag was invalid."""
        aggregator = PriceAggregator(FakeConnector(clients), policy=SingleAdminPolicy(ADMIN))
        with pytest.raises(UnauthorizedError):
            aggregator.add_source("feed-b", "pyth", 1, 18, caller="mallory")
        with pytest.raises(InvalidConfigError, match="pyth"):
            aggregator.add_source("feed-b", "pyth", 1, 18, caller=ADMIN)

    @pytest.mark.parametrize(
        "handle, source_type",
        [(None, "proxy_feed"), (42, "proxy_feed"), ("feed-b", None), ("feed-b", 1.5)],
    )
    def test_wrongly_typed_fields(self, handle: object, source_type: object) -> None:
        """Non-string handles and type tags should be invalid configuration."""
        aggregator = PriceAggregator(FakeConnector())
        with pytest.raises(InvalidConfigError):
            aggregator.add_source(handle, source_type, 1, 18)  # type: ignore[arg-type]
        assert len(aggregator.sources) == 0


class TestPriceAggregatorConcurrency:
    """Test how source reads run within a query."""

    @staticmethod
    def proxies(clients: dict[str, FakeProxyFeed], **config: object) -> PriceAggregator:
        aggregator = PriceAggregator(FakeConnector(clients), config=AggregatorConfig(**config))
        for handle in clients:
            aggregator.add_source(handle, "proxy_feed", weight=1, decimals=18)
        aggregator.add_asset_pair("ETH/USD", "ETH", "USD", list(clients))
        return aggregator

    @pytest.mark.asyncio
    async def test_reads_run_in_parallel(self, now: int) -> None:
        """Three slow sources should take about as long as one."""
        clients = {f"feed-{i}": FakeProxyFeed(3000 * E18, now, delay=0.2) for i in range(3)}
        aggregator = self.proxies(clients)

        started = time.monotonic()
        assert await aggregator.get_median_price("ETH/USD") == 3000 * E18
        assert time.monotonic() - started < 0.5

    @pytest.mark.asyncio
    async def test_hung_sources_do_not_starve_healthy_ones(self, now: int) -> None:
        """Sources stuck past the timeout should not delay the others' reads."""
        clients = {f"hung-{i}": FakeProxyFeed(1, now, delay=1.0) for i in range(5)}
        clients["fast"] = FakeProxyFeed(3000 * E18, now)
        aggregator = self.proxies(clients, fetch_timeout=0.3)

        rows = {row.handle: row for row in await aggregator.get_all_prices("ETH/USD")}
        assert rows["fast"].valid
        assert rows["fast"].price == 3000 * E18
        assert all(rows[f"hung-{i}"].error == "TimeoutError" for i in range(5))

        assert await aggregator.get_median_price("ETH/USD") == 3000 * E18

    @pytest.mark.asyncio
    async def test_repeated_reads_identical(self, aggregator: PriceAggregator) -> None:
        """Unchanged sources should give identical results on every query."""
        first = await aggregator.get_all_prices("ETH/USD")
        second = await aggregator.get_all_prices("ETH/USD")
        assert first == second
        assert await aggregator.get_aggregated_price("ETH/USD") == await aggregator.get_aggregated_price(
            "ETH/USD"
        )

    @pytest.mark.asyncio
    async def test_query_keeps_its_snapshot(self, clients: dict, now: int) -> None:
        """Changes made while a query is reading should not affect that query."""
        clients["feed-c"] = FakeProxyFeed(3000 * E18, now, delay=0.2)
        aggregator = build(FakeConnector(clients))

        query = asyncio.create_task(aggregator.get_aggregated_price("ETH/USD"))
        await asyncio.sleep(0.05)
        aggregator.set_minimum_responses(4)
        aggregator.remove_source("feed-b")

        result = await query
        assert result.valid_count == 3
        assert result.median == 3000 * E18
        with pytest.raises(InsufficientResponsesError):
            await aggregator.get_median_price("ETH/USD")
